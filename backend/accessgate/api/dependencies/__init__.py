"""Reusable FastAPI dependencies for routes."""
