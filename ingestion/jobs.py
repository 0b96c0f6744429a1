"""
Run-once guards for the import / refresh / shape-rebuild pipeline.

At most one static import and at most one realtime refresh may run at a
time in the process. A second invocation while one is in flight is a
no-op: it returns immediately without queuing.

    guard = JobGuard("static_import")
    with guard.running() as claimed:
        if claimed:
            ...  # only one caller gets here at a time

The guard is released when the block exits, including on exceptions.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.orm import Session

from db.session import session_scope
from ingestion.gtfs_realtime import refresh_realtime_delays
from ingestion.gtfs_static import refresh_static_data
from shapes.builder import rebuild_all
from shapes.resolver import has_explicit_shapes

logger = logging.getLogger(__name__)


class JobGuard:
    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()

    def claim(self) -> bool:
        """Atomically take the guard. False if someone else holds it."""
        # Must stay non-blocking: async jobs hold the guard across await.
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def running(self) -> Iterator[bool]:
        claimed = self.claim()
        if not claimed:
            logger.info("%s already running; skipping this invocation.", self.name)
        try:
            yield claimed
        finally:
            if claimed:
                self.release()


class SyncOrchestrator:
    """
    Owns the guards for the three background jobs, the one-time startup
    sync flag, and whether explicit shape geometry is currently loaded.

    session_factory is called once per job run; the session is closed
    when the job finishes.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory
        self.import_guard = JobGuard("static_import")
        self.realtime_guard = JobGuard("realtime_refresh")
        self.shapes_guard = JobGuard("shape_rebuild")
        self._sync_lock = threading.Lock()
        self._sync_started = False
        self.explicit_shapes = False

    def mark_sync_started(self) -> bool:
        """True for the first caller only; every later call returns False."""
        with self._sync_lock:
            if self._sync_started:
                return False
            self._sync_started = True
            return True

    def refresh_capabilities(self) -> bool:
        """Re-read whether explicit shape geometry is loaded."""
        with session_scope(self.session_factory) as session:
            self._set_explicit_shapes(session)
        return self.explicit_shapes

    def _set_explicit_shapes(self, session: Session) -> None:
        self.explicit_shapes = has_explicit_shapes(session)
        logger.info("Explicit shape geometry loaded: %s.", self.explicit_shapes)

    async def run_import(self) -> bool:
        """Download and load the static feed. False if skipped."""
        with self.import_guard.running() as claimed:
            if not claimed:
                return False
            with session_scope(self.session_factory) as session:
                await refresh_static_data(session)
                self._set_explicit_shapes(session)
            return True

    async def run_realtime_refresh(self) -> int | None:
        """Append fresh delay updates. None if skipped."""
        with self.realtime_guard.running() as claimed:
            if not claimed:
                return None
            with session_scope(self.session_factory) as session:
                return await refresh_realtime_delays(session)

    def run_shape_rebuild(self) -> int | None:
        """Rebuild the generated shape cache. None if skipped."""
        with self.shapes_guard.running() as claimed:
            if not claimed:
                return None
            with session_scope(self.session_factory) as session:
                return rebuild_all(session)

    async def startup_sync(self) -> None:
        """Import then rebuild shapes, once per process.

        Failures are logged so that the API still starts on stale data.
        """
        if not self.mark_sync_started():
            return
        try:
            await self.run_import()
            self.run_shape_rebuild()
        except Exception as exc:
            logger.error("GTFS import on startup failed: %s", exc, exc_info=True)
