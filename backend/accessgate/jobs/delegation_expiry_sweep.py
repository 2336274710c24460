"""
Delegation Expiry Sweep Job.

Eagerly marks active delegations past their end date as expired:
- Stored status becomes "expired" (resolution already ignores them)
- One DELEGATION_EXPIRED audit row per delegation
- Delegatee epochs bumped so cached projections are recomputed

Run as a cron job:
    python -m accessgate.jobs.delegation_expiry_sweep
"""

import logging
import sys
import uuid
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from accessgate.config.settings import Settings
from accessgate.runtime import AccessRuntime
from accessgate.services.delegation_service import DelegationService
from accessgate.services.projection_cache import ProjectionCache

logger = logging.getLogger(__name__)


class DelegationExpirySweep:
    """Runs one expiry pass over every tenant."""

    def __init__(self, db_session: Session, cache: Optional[ProjectionCache] = None):
        self.db = db_session
        self.cache = cache
        self.run_id = str(uuid.uuid4())

    def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        service = DelegationService(
            self.db,
            cache=self.cache,
            correlation_id=self.run_id,
            source="worker",
        )
        expired = service.expire_due_delegations(now=now)
        stats = {
            "delegations_expired": len(expired),
            "tenants_affected": len({d.tenant_id for d in expired}),
        }
        logger.info("delegation_expiry_sweep.completed", extra={"run_id": self.run_id, **stats})
        return stats


def main():
    """Main entry point for the delegation expiry sweep."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info("Delegation expiry sweep starting")

    runtime = AccessRuntime.from_settings(Settings.from_env())
    try:
        with runtime.session() as session:
            DelegationExpirySweep(session, cache=runtime.projection_cache).run()
    except Exception as e:
        logger.error("Delegation expiry sweep failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        runtime.close()

    logger.info("Delegation expiry sweep finished")


if __name__ == "__main__":
    main()
