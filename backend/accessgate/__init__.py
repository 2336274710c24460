"""
accessgate - unified authorization engine.

Combines tenant-scoped role assignment (with time/scope-bounded delegation)
and subscription-based feature entitlement into a single access decision.
"""

__version__ = "0.1.0"
