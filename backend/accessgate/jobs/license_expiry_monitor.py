"""
License Expiry Monitor Job.

Scans every tenant for effective feature grants that expire inside the
warning window and logs one warning per tenant, so operators can follow up
before access lapses. Read-only: nothing is mutated or audited.

Run as a daily cron job:
    python -m accessgate.jobs.license_expiry_monitor

Configuration:
- LICENSE_EXPIRY_WARNING_DAYS: Warning window in days (default: 30)
"""

import logging
import sys
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from accessgate.config.settings import Settings
from accessgate.models.base import as_utc
from accessgate.models.entitlement import TenantFeatureGrant
from accessgate.runtime import AccessRuntime
from accessgate.services.entitlement_service import EntitlementService

logger = logging.getLogger(__name__)


class LicenseExpiryMonitor:

    def __init__(self, db_session: Session, within_days: int = 30):
        self.db = db_session
        self.within_days = within_days

    def _tenants_with_expiring_grants(self) -> List[str]:
        rows = (
            self.db.query(TenantFeatureGrant.tenant_id)
            .filter(
                TenantFeatureGrant.is_granted == True,  # noqa: E712
                TenantFeatureGrant.expires_at.isnot(None),
            )
            .distinct()
            .all()
        )
        return sorted(row[0] for row in rows)

    def run(self, now: Optional[datetime] = None) -> Dict[str, List[dict]]:
        """
        Returns:
            tenant_id -> [{feature_name, expires_at}] for tenants with grants
            expiring inside the window
        """
        service = EntitlementService(self.db, source="worker")
        report: Dict[str, List[dict]] = {}

        for tenant_id in self._tenants_with_expiring_grants():
            expiring = service.find_expiring_grants(tenant_id, within_days=self.within_days, now=now)
            if not expiring:
                continue
            report[tenant_id] = [
                {"feature_name": g.feature_name, "expires_at": as_utc(g.expires_at).isoformat()}
                for g in expiring
            ]
            logger.warning(
                "license_expiry_monitor.grants_expiring",
                extra={
                    "tenant_id": tenant_id,
                    "within_days": self.within_days,
                    "features": [g.feature_name for g in expiring],
                },
            )

        logger.info(
            "license_expiry_monitor.completed",
            extra={"tenants_flagged": len(report), "within_days": self.within_days},
        )
        return report


def main():
    """Main entry point for the license expiry monitor."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    settings = Settings.from_env()
    runtime = AccessRuntime.from_settings(settings)
    try:
        with runtime.session() as session:
            LicenseExpiryMonitor(session, within_days=settings.license_expiry_warning_days).run()
    except Exception as e:
        logger.error("License expiry monitor failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
