"""
Root test configuration and fixtures.

Database: SQLite in-memory on a StaticPool. Each test runs inside an outer
transaction that is rolled back afterwards; services commit freely because
the session joins that transaction through SAVEPOINTs.

Catalog: the real config/catalog.yml, seeded once per test.
"""

import os
import uuid
from typing import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from accessgate.config.catalog import CatalogLoader
from accessgate.config.settings import Settings
from accessgate.db_base import Base
from accessgate.services.projection_cache import InMemoryProjectionBackend, ProjectionCache
from accessgate.tests.helpers import CATALOG_PATH, JWT_SECRET, TENANT, WEBHOOK_SECRET

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session")
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite manages transactions itself; take that over so SAVEPOINT works.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    import accessgate.models  # noqa: F401 - registers every table

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Session whose commits become savepoint releases.

    Everything a test writes is discarded when the outer transaction rolls back.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="session")
def catalog_loader():
    return CatalogLoader(str(CATALOG_PATH))


@pytest.fixture(scope="session")
def catalog(catalog_loader):
    return catalog_loader.catalog


@pytest.fixture
def seeded_db(db_session, catalog):
    """Database with the catalog applied."""
    from accessgate.services.catalog_seeder import seed_catalog

    seed_catalog(db_session, catalog)
    return db_session


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite:///:memory:",
        jwt_secret=JWT_SECRET,
        lifecycle_webhook_secret=WEBHOOK_SECRET,
        catalog_path=str(CATALOG_PATH),
        projection_refresh_interval_seconds=0,
    )


@pytest.fixture
def projection_cache():
    return ProjectionCache(InMemoryProjectionBackend(max_entries=100, ttl_seconds=300))


@pytest.fixture
def role_service(seeded_db, catalog, projection_cache):
    from accessgate.services.role_service import RoleService

    return RoleService(seeded_db, catalog, cache=projection_cache, correlation_id=str(uuid.uuid4()))


@pytest.fixture
def delegation_service(seeded_db, projection_cache):
    from accessgate.services.delegation_service import DelegationService

    return DelegationService(seeded_db, cache=projection_cache)


@pytest.fixture
def entitlement_service(seeded_db, projection_cache):
    from accessgate.services.entitlement_service import EntitlementService

    return EntitlementService(seeded_db, cache=projection_cache)


@pytest.fixture
def decision_service(seeded_db, projection_cache, catalog, settings):
    from accessgate.services.access_decision_service import AccessDecisionService

    return AccessDecisionService(seeded_db, cache=projection_cache, catalog=catalog, settings=settings)


@pytest.fixture
def provisioned_roles(role_service):
    """The catalog's template roles created in TENANT, keyed by slug."""
    roles = role_service.provision_default_roles(TENANT, actor_user_id="bootstrap")
    return {role.slug: role for role in roles}


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")
