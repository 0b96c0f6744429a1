"""
Tests for ingestion.jobs: the run-once guards and the sync orchestrator.

Coroutines are driven with asyncio.run(); the feed download, realtime
fetch and shape rebuild are patched so nothing touches the network.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ingestion.jobs import JobGuard, SyncOrchestrator


@pytest.fixture(autouse=True)
def explicit_shapes():
    """Capability check patched out; the session factory yields mocks."""
    with patch("ingestion.jobs.has_explicit_shapes", return_value=True) as check:
        yield check


@pytest.fixture
def orchestrator():
    return SyncOrchestrator(MagicMock())


class TestJobGuard:
    def test_second_claim_fails_until_release(self):
        guard = JobGuard("test")
        assert guard.claim() is True
        assert guard.busy is True
        assert guard.claim() is False
        guard.release()
        assert guard.busy is False
        assert guard.claim() is True

    def test_running_releases_on_exception(self):
        guard = JobGuard("test")
        with pytest.raises(RuntimeError):
            with guard.running() as claimed:
                assert claimed is True
                raise RuntimeError("boom")
        assert guard.busy is False

    def test_nested_running_is_skipped(self):
        guard = JobGuard("test")
        with guard.running() as outer:
            with guard.running() as inner:
                assert outer is True
                assert inner is False
            assert guard.busy is True
        assert guard.busy is False


class TestSyncOrchestrator:
    def test_run_import_closes_session(self, orchestrator):
        with patch("ingestion.jobs.refresh_static_data", new=AsyncMock()) as refresh:
            assert asyncio.run(orchestrator.run_import()) is True
        refresh.assert_awaited_once()
        orchestrator.session_factory.return_value.close.assert_called_once()
        assert orchestrator.import_guard.busy is False

    def test_run_import_rechecks_explicit_shapes(self, orchestrator, explicit_shapes):
        assert orchestrator.explicit_shapes is False
        with patch("ingestion.jobs.refresh_static_data", new=AsyncMock()):
            asyncio.run(orchestrator.run_import())
        assert orchestrator.explicit_shapes is True
        explicit_shapes.assert_called_once_with(orchestrator.session_factory.return_value)

    def test_refresh_capabilities_follows_data(self, orchestrator, explicit_shapes):
        assert orchestrator.refresh_capabilities() is True
        explicit_shapes.return_value = False
        assert orchestrator.refresh_capabilities() is False
        assert orchestrator.explicit_shapes is False

    def test_run_import_skipped_while_running(self, orchestrator):
        orchestrator.import_guard.claim()
        with patch("ingestion.jobs.refresh_static_data", new=AsyncMock()) as refresh:
            assert asyncio.run(orchestrator.run_import()) is False
        refresh.assert_not_awaited()
        orchestrator.session_factory.assert_not_called()

    def test_run_realtime_refresh(self, orchestrator):
        with patch("ingestion.jobs.refresh_realtime_delays", new=AsyncMock(return_value=7)):
            assert asyncio.run(orchestrator.run_realtime_refresh()) == 7

    def test_realtime_refresh_skipped_while_running(self, orchestrator):
        orchestrator.realtime_guard.claim()
        with patch("ingestion.jobs.refresh_realtime_delays", new=AsyncMock(return_value=7)):
            assert asyncio.run(orchestrator.run_realtime_refresh()) is None

    def test_shape_rebuild_skipped_while_running(self, orchestrator):
        orchestrator.shapes_guard.claim()
        with patch("ingestion.jobs.rebuild_all") as rebuild:
            assert orchestrator.run_shape_rebuild() is None
        rebuild.assert_not_called()

    def test_import_failure_releases_guard(self, orchestrator):
        failing = AsyncMock(side_effect=ValueError("GTFS_STATIC_URL is not configured."))
        with patch("ingestion.jobs.refresh_static_data", new=failing):
            with pytest.raises(ValueError):
                asyncio.run(orchestrator.run_import())
        assert orchestrator.import_guard.busy is False
        orchestrator.session_factory.return_value.close.assert_called_once()

    def test_startup_sync_runs_once(self, orchestrator):
        with (
            patch("ingestion.jobs.refresh_static_data", new=AsyncMock()) as refresh,
            patch("ingestion.jobs.rebuild_all", return_value=2) as rebuild,
        ):
            asyncio.run(orchestrator.startup_sync())
            asyncio.run(orchestrator.startup_sync())
        assert refresh.await_count == 1
        assert rebuild.call_count == 1

    def test_startup_sync_swallows_import_failure(self, orchestrator):
        failing = AsyncMock(side_effect=RuntimeError("network down"))
        with (
            patch("ingestion.jobs.refresh_static_data", new=failing),
            patch("ingestion.jobs.rebuild_all") as rebuild,
        ):
            asyncio.run(orchestrator.startup_sync())
        rebuild.assert_not_called()
        assert orchestrator.mark_sync_started() is False
