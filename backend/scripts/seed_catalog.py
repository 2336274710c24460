"""
Authorization Catalog Seed Script

Applies config/catalog.yml (permissions, features, plan bundles, feature
permission map, system roles) to the database. Safe to re-run: unchanged
catalogs write nothing.

Optionally bootstraps the first administrator, which the API cannot do for
itself because every admin route is guarded by rbac:manage.

Usage:
    python backend/scripts/seed_catalog.py
    python backend/scripts/seed_catalog.py --dry-run
    python backend/scripts/seed_catalog.py --bootstrap-admin tenant-1:user-1
    python backend/scripts/seed_catalog.py --bootstrap-admin tenant-1:user-1 --provision-defaults

Environment variables:
    DATABASE_URL: PostgreSQL connection string (required)
    CATALOG_PATH: Catalog YAML (default: config/catalog.yml)
"""

import os
import sys
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.config.catalog import Catalog
from accessgate.config.settings import Settings
from accessgate.constants.permissions import SUPER_ADMIN_ROLE
from accessgate.models.role import Role
from accessgate.runtime import AccessRuntime
from accessgate.services.catalog_seeder import seed_catalog
from accessgate.services.role_service import RoleService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SEED_ACTOR = "system:seed"


def parse_admin(value: str) -> Tuple[str, str]:
    """Parse TENANT:USER."""
    tenant_id, sep, user_id = value.partition(":")
    if not sep or not tenant_id or not user_id:
        raise ValueError(f"expected TENANT:USER, got {value!r}")
    return tenant_id, user_id


def bootstrap_admin(
    db: Session,
    catalog: Catalog,
    tenant_id: str,
    user_id: str,
    provision_defaults: bool = False,
) -> None:
    """Assign the super_admin system role, optionally provisioning tenant roles."""
    super_admin = (
        db.query(Role)
        .filter(Role.tenant_id.is_(None), Role.slug == SUPER_ADMIN_ROLE)
        .first()
    )
    if super_admin is None:
        raise ValueError(f"system role {SUPER_ADMIN_ROLE!r} is missing from the catalog")

    service = RoleService(db, catalog, source="system")
    service.assign_role(tenant_id, user_id, super_admin.id, actor_user_id=SEED_ACTOR, source="bootstrap")
    logger.info("Assigned %s to %s in %s", SUPER_ADMIN_ROLE, user_id, tenant_id)

    if provision_defaults:
        created = service.provision_default_roles(tenant_id, actor_user_id=SEED_ACTOR, admin_user_id=user_id)
        logger.info("Provisioned %d default roles in %s", len(created), tenant_id)


def run(
    settings: Settings,
    dry_run: bool = False,
    admin: Optional[Tuple[str, str]] = None,
    provision_defaults: bool = False,
) -> None:
    runtime = AccessRuntime.from_settings(settings)
    try:
        catalog = runtime.catalog
        with runtime.session() as session:
            try:
                result = seed_catalog(session, catalog, commit=not dry_run)
                if dry_run:
                    logger.info("DRY RUN - No changes will be made")
                    logger.info("Would apply: %s", result.to_dict())
                    session.rollback()
                    return
                logger.info("Catalog applied: %s", result.to_dict())

                if admin is not None:
                    bootstrap_admin(session, catalog, admin[0], admin[1], provision_defaults)
            except SQLAlchemyError as e:
                logger.error(f"Database error: {e}")
                session.rollback()
                raise
    finally:
        runtime.close()


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Seed the authorization catalog into the database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python backend/scripts/seed_catalog.py                                   # Apply catalog
  python backend/scripts/seed_catalog.py --dry-run                         # Preview without saving
  python backend/scripts/seed_catalog.py --bootstrap-admin acme:u-1        # First administrator
        """
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without saving to database"
    )
    parser.add_argument(
        "--bootstrap-admin",
        type=str,
        metavar="TENANT:USER",
        help="Assign the super_admin role to USER in TENANT"
    )
    parser.add_argument(
        "--provision-defaults",
        action="store_true",
        help="With --bootstrap-admin: also create the tenant's default roles"
    )
    parser.add_argument(
        "--database-url",
        type=str,
        help="Database URL (overrides DATABASE_URL env var)"
    )

    args = parser.parse_args()

    env = dict(os.environ)
    if args.database_url:
        env["DATABASE_URL"] = args.database_url
    settings = Settings.from_env(env)
    if not settings.database_url:
        logger.error("DATABASE_URL environment variable is required")
        sys.exit(1)

    try:
        admin = parse_admin(args.bootstrap_admin) if args.bootstrap_admin else None
        run(settings, dry_run=args.dry_run, admin=admin, provision_defaults=args.provision_defaults)
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f"Script failed: {e}")
        sys.exit(1)

    logger.info("Done!")


if __name__ == "__main__":
    main()
