"""
License Reconciliation Job.

Detects drift between each tenant's license and its access state, and
optionally repairs it:
- missing_default_roles: a catalog role template has no copy in the tenant
- missing_admin: the tenant has role holders but nobody holds tenant_admin
- missing_plan_features: license active, a plan feature has no effective grant
- extra_plan_grants: license active, a plan-sourced grant is outside the plan
- stale_plan_grants: license expired/cancelled, plan-sourced grants still effective
- unknown_plan: the license names a plan with no bundle

Repairs go through the regular services, so every fix bumps the tenant's
counter, writes its audit row and evicts cached projections. missing_admin
and unknown_plan are reported only.

Usage:
    python -m accessgate.jobs.reconcile_licenses --tenant-id TENANT [--dry-run] [--auto-fix]
    python -m accessgate.jobs.reconcile_licenses --all [--dry-run] [--auto-fix]
"""

import argparse
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.config.catalog import Catalog
from accessgate.config.settings import Settings
from accessgate.models.entitlement import LicenseStatus, PLAN_SOURCES, TenantFeatureGrant, TenantLicense
from accessgate.models.role import Role
from accessgate.models.user_role_assignment import UserRoleAssignment
from accessgate.platform.errors import AccessGateError, UnknownPlanError
from accessgate.runtime import AccessRuntime
from accessgate.services.entitlement_service import EntitlementService
from accessgate.services.projection_cache import ProjectionCache
from accessgate.services.role_service import RoleService

logger = logging.getLogger(__name__)

ADMIN_ROLE_SLUG = "tenant_admin"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueType(str, Enum):
    MISSING_DEFAULT_ROLES = "missing_default_roles"
    MISSING_ADMIN = "missing_admin"
    MISSING_PLAN_FEATURES = "missing_plan_features"
    EXTRA_PLAN_GRANTS = "extra_plan_grants"
    STALE_PLAN_GRANTS = "stale_plan_grants"
    UNKNOWN_PLAN = "unknown_plan"


AUTO_FIXABLE = frozenset({
    IssueType.MISSING_DEFAULT_ROLES,
    IssueType.MISSING_PLAN_FEATURES,
    IssueType.EXTRA_PLAN_GRANTS,
    IssueType.STALE_PLAN_GRANTS,
})


@dataclass
class LicenseIssue:
    type: IssueType
    severity: IssueSeverity
    tenant_id: str
    description: str
    metadata: dict = field(default_factory=dict)

    @property
    def auto_fixable(self) -> bool:
        return self.type in AUTO_FIXABLE

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "tenant_id": self.tenant_id,
            "description": self.description,
            "auto_fixable": self.auto_fixable,
            "metadata": self.metadata,
        }


@dataclass
class ReconciliationReport:
    """Outcome of reconciling one tenant."""
    tenant_id: str
    dry_run: bool
    issues: List[LicenseIssue] = field(default_factory=list)
    fixed: List[IssueType] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def issues_found(self) -> int:
        return len(self.issues)

    @property
    def issues_fixed(self) -> int:
        return sum(1 for issue in self.issues if issue.type in self.fixed)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "dry_run": self.dry_run,
            "checked_at": self.checked_at.isoformat(),
            "issues_found": self.issues_found,
            "issues_fixed": self.issues_fixed,
            "issues": [issue.to_dict() for issue in self.issues],
            "errors": self.errors,
        }


class LicenseReconciler:
    """
    Usage:
        reconciler = LicenseReconciler(db, catalog, cache=runtime.projection_cache, auto_fix=True)
        reports = reconciler.run()              # every licensed tenant
        report = reconciler.reconcile_tenant("tenant-1")
    """

    def __init__(
        self,
        db_session: Session,
        catalog: Catalog,
        cache: Optional[ProjectionCache] = None,
        auto_fix: bool = False,
        dry_run: bool = False,
    ):
        self.db = db_session
        self.catalog = catalog
        self.cache = cache
        self.auto_fix = auto_fix
        self.dry_run = dry_run
        self.run_id = str(uuid.uuid4())

    def _service_kwargs(self) -> dict:
        return {"cache": self.cache, "correlation_id": self.run_id, "source": "worker"}

    def _licensed_tenants(self) -> List[str]:
        rows = self.db.query(TenantLicense.tenant_id).all()
        return sorted(row[0] for row in rows)

    # --- detection ---

    def _check_roles(self, tenant_id: str) -> List[LicenseIssue]:
        issues = []
        roles = self.db.query(Role).filter(Role.tenant_id == tenant_id).all()
        slugs = {role.slug for role in roles}
        missing = sorted(
            template.slug
            for template in self.catalog.role_templates.values()
            if template.slug not in slugs
        )
        if missing:
            issues.append(LicenseIssue(
                type=IssueType.MISSING_DEFAULT_ROLES,
                severity=IssueSeverity.HIGH,
                tenant_id=tenant_id,
                description=f"Default roles missing: {', '.join(missing)}",
                metadata={"slugs": missing},
            ))

        holders = (
            self.db.query(UserRoleAssignment.user_id, Role.slug)
            .join(Role, Role.id == UserRoleAssignment.role_id)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.is_active == True,  # noqa: E712
            )
            .all()
        )
        if holders and not any(slug == ADMIN_ROLE_SLUG for _, slug in holders):
            issues.append(LicenseIssue(
                type=IssueType.MISSING_ADMIN,
                severity=IssueSeverity.CRITICAL,
                tenant_id=tenant_id,
                description="Tenant has role holders but no tenant administrator",
                metadata={"role_holders": len({user_id for user_id, _ in holders})},
            ))
        return issues

    def _check_grants(self, tenant_id: str, tenant_license: TenantLicense) -> List[LicenseIssue]:
        grants = self.db.query(TenantFeatureGrant).filter(TenantFeatureGrant.tenant_id == tenant_id).all()
        effective_plan_grants = sorted(
            g.feature_name for g in grants if g.is_effective() and g.granted_by in PLAN_SOURCES
        )

        if tenant_license.status != LicenseStatus.ACTIVE.value:
            if not effective_plan_grants:
                return []
            return [LicenseIssue(
                type=IssueType.STALE_PLAN_GRANTS,
                severity=IssueSeverity.HIGH,
                tenant_id=tenant_id,
                description=f"License is {tenant_license.status} but plan grants are still effective",
                metadata={"features": effective_plan_grants, "status": tenant_license.status},
            )]

        if not tenant_license.plan_name:
            return []
        try:
            plan_features = set(EntitlementService(self.db).get_plan_features(tenant_license.plan_name))
        except UnknownPlanError:
            return [LicenseIssue(
                type=IssueType.UNKNOWN_PLAN,
                severity=IssueSeverity.MEDIUM,
                tenant_id=tenant_id,
                description=f"License names unknown plan {tenant_license.plan_name!r}",
                metadata={"plan_name": tenant_license.plan_name},
            )]

        issues = []
        effective = {g.feature_name for g in grants if g.is_effective()}
        missing = sorted(plan_features - effective)
        if missing:
            issues.append(LicenseIssue(
                type=IssueType.MISSING_PLAN_FEATURES,
                severity=IssueSeverity.HIGH,
                tenant_id=tenant_id,
                description=f"Plan {tenant_license.plan_name} features not granted: {', '.join(missing)}",
                metadata={"plan_name": tenant_license.plan_name, "features": missing},
            ))
        extra = sorted(set(effective_plan_grants) - plan_features)
        if extra:
            issues.append(LicenseIssue(
                type=IssueType.EXTRA_PLAN_GRANTS,
                severity=IssueSeverity.LOW,
                tenant_id=tenant_id,
                description=f"Plan-sourced grants outside plan {tenant_license.plan_name}: {', '.join(extra)}",
                metadata={"plan_name": tenant_license.plan_name, "features": extra},
            ))
        return issues

    def check_tenant(self, tenant_id: str) -> List[LicenseIssue]:
        """Detect drift for one tenant. Read-only."""
        issues = self._check_roles(tenant_id)
        tenant_license = (
            self.db.query(TenantLicense).filter(TenantLicense.tenant_id == tenant_id).first()
        )
        if tenant_license is not None:
            issues.extend(self._check_grants(tenant_id, tenant_license))
        return issues

    # --- repair ---

    def _fix(self, issue: LicenseIssue) -> None:
        if issue.type == IssueType.MISSING_DEFAULT_ROLES:
            RoleService(self.db, self.catalog, **self._service_kwargs()).provision_default_roles(
                issue.tenant_id, actor_user_id=None
            )
        elif issue.type == IssueType.MISSING_PLAN_FEATURES:
            EntitlementService(self.db, **self._service_kwargs()).grant_features_for_plan(
                issue.tenant_id, issue.metadata["plan_name"]
            )
        elif issue.type == IssueType.STALE_PLAN_GRANTS:
            EntitlementService(self.db, **self._service_kwargs()).withdraw_plan_grants(
                issue.tenant_id, reason="reconciliation"
            )
        elif issue.type == IssueType.EXTRA_PLAN_GRANTS:
            service = EntitlementService(self.db, **self._service_kwargs())
            for feature_name in issue.metadata["features"]:
                service.revoke_feature(issue.tenant_id, feature_name)

    def reconcile_tenant(self, tenant_id: str) -> ReconciliationReport:
        report = ReconciliationReport(tenant_id=tenant_id, dry_run=self.dry_run)
        report.issues = self.check_tenant(tenant_id)

        for issue in report.issues:
            logger.warning(
                "license_reconciliation.issue_found",
                extra={"run_id": self.run_id, **issue.to_dict()},
            )

        if not self.auto_fix or self.dry_run:
            return report

        for issue in report.issues:
            if not issue.auto_fixable:
                continue
            try:
                self._fix(issue)
            except (AccessGateError, SQLAlchemyError) as e:
                self.db.rollback()
                report.errors.append(f"{issue.type.value}: {e}")
                logger.error(
                    "license_reconciliation.fix_failed",
                    extra={"run_id": self.run_id, "tenant_id": tenant_id, "type": issue.type.value},
                    exc_info=True,
                )
                continue
            report.fixed.append(issue.type)
            logger.info(
                "license_reconciliation.issue_fixed",
                extra={"run_id": self.run_id, "tenant_id": tenant_id, "type": issue.type.value},
            )
        return report

    def run(self, tenant_id: Optional[str] = None) -> Dict[str, ReconciliationReport]:
        """
        Reconcile one tenant, or every tenant holding a license.

        Returns:
            tenant_id -> ReconciliationReport
        """
        tenants = [tenant_id] if tenant_id else self._licensed_tenants()
        reports = {tid: self.reconcile_tenant(tid) for tid in tenants}

        logger.info(
            "license_reconciliation.completed",
            extra={
                "run_id": self.run_id,
                "tenants_checked": len(reports),
                "tenants_with_issues": sum(1 for r in reports.values() if r.issues_found),
                "issues_found": sum(r.issues_found for r in reports.values()),
                "issues_fixed": sum(r.issues_fixed for r in reports.values()),
                "dry_run": self.dry_run,
                "auto_fix": self.auto_fix,
            },
        )
        return reports


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Detect and repair license and role drift",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m accessgate.jobs.reconcile_licenses --all                      # Report only
  python -m accessgate.jobs.reconcile_licenses --tenant-id acme --auto-fix
  python -m accessgate.jobs.reconcile_licenses --all --auto-fix --dry-run # Report what would be fixed
        """
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant-id", type=str, help="Reconcile a single tenant")
    target.add_argument("--all", action="store_true", help="Reconcile every licensed tenant")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect only; never write, even with --auto-fix"
    )
    parser.add_argument(
        "--auto-fix",
        action="store_true",
        help="Repair auto-fixable issues"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Main entry point for license reconciliation."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = parse_args(argv)

    runtime = AccessRuntime.from_settings(Settings.from_env())
    try:
        with runtime.session() as session:
            reports = LicenseReconciler(
                session,
                runtime.catalog,
                cache=runtime.projection_cache,
                auto_fix=args.auto_fix,
                dry_run=args.dry_run,
            ).run(tenant_id=args.tenant_id)
    except Exception as e:
        logger.error("License reconciliation failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        runtime.close()

    if any(report.errors for report in reports.values()):
        sys.exit(1)


if __name__ == "__main__":
    main()
