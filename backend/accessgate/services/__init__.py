"""Mutation, resolution and decision services for the authorization engine."""
