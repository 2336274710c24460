"""
AccessRuntime - composition root for the authorization engine.

Owns settings, catalog, database engine/session factory and the projection
cache. There are no module-level singletons: the FastAPI lifespan builds
one runtime and attaches it to app.state; jobs and scripts build their own.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from accessgate.config.catalog import Catalog, CatalogLoader
from accessgate.config.settings import Settings
from accessgate.database.session import create_db_engine, create_session_factory
from accessgate.services.projection_cache import ProjectionCache

logger = logging.getLogger(__name__)


class AccessRuntime:
    """
    Usage:
        runtime = AccessRuntime.from_settings(Settings.from_env())
        with runtime.session() as db:
            ...
        runtime.close()
    """

    def __init__(
        self,
        settings: Settings,
        catalog_loader: CatalogLoader,
        projection_cache: ProjectionCache,
        engine: Optional[Engine] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.settings = settings
        self.catalog_loader = catalog_loader
        self.projection_cache = projection_cache
        self.engine = engine
        self.session_factory = session_factory
        self._refresh_stop = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessRuntime":
        engine = None
        session_factory = None
        if settings.database_url:
            engine = create_db_engine(settings)
            session_factory = create_session_factory(engine)
        else:
            logger.error("runtime.database_not_configured")

        return cls(
            settings=settings,
            catalog_loader=CatalogLoader(settings.catalog_path),
            projection_cache=ProjectionCache.from_settings(settings),
            engine=engine,
            session_factory=session_factory,
        )

    @property
    def catalog(self) -> Catalog:
        return self.catalog_loader.catalog

    @contextmanager
    def session(self) -> Iterator[Session]:
        if self.session_factory is None:
            raise RuntimeError("DATABASE_URL is not configured")
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    # --- proactive refresh ---

    def refresh_once(self) -> int:
        with self.session() as db:
            return self.projection_cache.refresh_stale(db)

    def _refresh_loop(self, interval: int) -> None:
        while not self._refresh_stop.wait(interval):
            try:
                self.refresh_once()
            except Exception:
                # Keep the loop alive; STRICT reads re-verify anyway.
                logger.exception("projection_cache.refresh_failed")

    def start_refresh_loop(self) -> bool:
        """Start the background refresh thread. Returns False if disabled."""
        interval = self.settings.projection_refresh_interval_seconds
        if interval <= 0 or self.session_factory is None:
            return False
        if self._refresh_thread is not None and self._refresh_thread.is_alive():
            return True
        self._refresh_stop.clear()
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop,
            args=(interval,),
            name="projection-refresh",
            daemon=True,
        )
        self._refresh_thread.start()
        logger.info("projection_cache.refresh_loop_started", extra={"interval_seconds": interval})
        return True

    def stop_refresh_loop(self) -> None:
        self._refresh_stop.set()
        if self._refresh_thread is not None:
            self._refresh_thread.join(timeout=5)
            self._refresh_thread = None

    def close(self) -> None:
        self.stop_refresh_loop()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("runtime.closed")
