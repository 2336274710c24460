"""
Platform-level modules shared by every route.

- errors: engine error taxonomy and denial reasons
- audit: append-only audit trail and export
- tenant_context: caller identity and tenant isolation

Nothing is re-exported here: accessgate.models imports platform.audit, and
an eager package import would pull the FastAPI auth layer into every model
import.
"""
