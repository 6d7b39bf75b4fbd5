"""
Tests for process lifecycle and signal handling.
"""

import asyncio
import os
import signal
from unittest.mock import MagicMock

import pytest

from config import MaintenanceConfig
from lifecycle import CancellationToken, ExitStatus, LifecycleManager
from maintenance_scheduler import MaintenanceScheduler

from helpers import FakeCatalog, day, make_policy


class TestCancellationToken:

    def test_starts_uncancelled(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.exit_status == ExitStatus.OK
        assert token.reason is None

    def test_cancel_sets_reason(self):
        token = CancellationToken()
        token.cancel("SIGTERM")
        assert token.cancelled
        assert token.reason == "SIGTERM"
        assert token.exit_status == ExitStatus.OK

    def test_host_loss_upgrades_graceful_cancel(self):
        token = CancellationToken()
        token.cancel("SIGTERM")
        token.cancel("host gone", ExitStatus.HOST_UNAVAILABLE)
        assert token.exit_status == ExitStatus.HOST_UNAVAILABLE
        assert token.reason == "host gone"

    def test_graceful_cancel_does_not_downgrade(self):
        token = CancellationToken()
        token.cancel("host gone", ExitStatus.HOST_UNAVAILABLE)
        token.cancel("SIGTERM")
        assert token.exit_status == ExitStatus.HOST_UNAVAILABLE
        assert token.reason == "host gone"

    @pytest.mark.asyncio
    async def test_wait_returns_after_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.cancelled


class TestLifecycleManager:
    """Tests for request routing."""

    @pytest.fixture
    def scheduler(self):
        scheduler = MagicMock()
        scheduler.token = CancellationToken()
        return scheduler

    def test_request_shutdown(self, scheduler):
        LifecycleManager(scheduler).request_shutdown("SIGINT")
        assert scheduler.token.cancelled
        assert scheduler.token.reason == "SIGINT"

    def test_second_shutdown_keeps_first_reason(self, scheduler):
        manager = LifecycleManager(scheduler)
        manager.request_shutdown("SIGTERM")
        manager.request_shutdown("SIGINT")
        assert scheduler.token.reason == "SIGTERM"

    def test_request_reload_and_wake(self, scheduler):
        manager = LifecycleManager(scheduler)
        manager.request_reload()
        manager.request_wake()
        scheduler.request_reload.assert_called_once()
        scheduler.wake.assert_called_once()

    def test_host_unavailable(self, scheduler):
        LifecycleManager(scheduler).host_unavailable("ping failed")
        assert scheduler.token.exit_status == ExitStatus.HOST_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_signals_routed(self, scheduler):
        manager = LifecycleManager(scheduler)
        manager.install()
        try:
            os.kill(os.getpid(), signal.SIGUSR1)
            os.kill(os.getpid(), signal.SIGHUP)
            for _ in range(50):
                if scheduler.wake.called and scheduler.request_reload.called:
                    break
                await asyncio.sleep(0.01)
        finally:
            manager.uninstall()

        scheduler.wake.assert_called_once()
        scheduler.request_reload.assert_called_once()
        assert not scheduler.token.cancelled

    @pytest.mark.asyncio
    async def test_sigterm_stops_daemon_with_zero(self, gateway):
        scheduler = MaintenanceScheduler(
            FakeCatalog([]), gateway, config=MaintenanceConfig(interval_seconds=60),
        )
        manager = LifecycleManager(scheduler)
        asyncio.get_running_loop().call_later(0.05, os.kill, os.getpid(), signal.SIGTERM)

        status = await asyncio.wait_for(manager.run(), timeout=2)

        assert status == ExitStatus.OK
        assert scheduler.token.reason == "SIGTERM"
        assert manager._installed == []

    @pytest.mark.asyncio
    async def test_host_loss_mid_pass_exits_one_and_skips_rest(self, gateway, memory_backend):
        catalog = FakeCatalog([make_policy("a"), make_policy("b"), make_policy("c")])
        scheduler = MaintenanceScheduler(
            catalog, gateway, config=MaintenanceConfig(interval_seconds=60),
            clock=lambda: day(100),
        )
        manager = LifecycleManager(scheduler)
        loop = asyncio.get_running_loop()

        def lose_host_while_a_runs(window):
            if window.table_id == "a":
                loop.call_soon_threadsafe(manager.host_unavailable, "connection lost")

        memory_backend.hooks["create_partition"] = lose_host_while_a_runs
        scheduler.wake()

        status = await asyncio.wait_for(manager.run(), timeout=2)

        assert status == ExitStatus.HOST_UNAVAILABLE
        assert scheduler.token.reason == "connection lost"
        assert scheduler.last_report.interrupted
        assert [o.table_id for o in scheduler.last_report.outcomes] == ["a"]
        assert [c for c in memory_backend.calls if c[1] in ("b", "c")] == []
        assert memory_backend.windows("b") == {}
        assert memory_backend.windows("c") == {}
