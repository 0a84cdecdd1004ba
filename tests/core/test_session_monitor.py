# tests/core/test_session_monitor.py
"""
Tests for the session security monitor.

The state machine is driven with a fake clock and explicit ``check()``
calls; one test at the end runs the real timer and heartbeat tasks with
sub-second timeouts.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from src.core.config import Settings
from src.core.exceptions import ConfigurationError
from src.core.security.session_monitor import SessionMonitor, SessionSecurityConfig
from src.models.session_state import MonitorState, Session, TerminationReason
from src.services.memory_store import InMemorySecureStore


@pytest.fixture
def store():
    store = InMemorySecureStore()
    store.grant_roles("staff-1", "staff")
    return store


@pytest.fixture
def callbacks():
    return Mock(on_warning=AsyncMock(), on_terminated=AsyncMock())


@pytest.fixture
def monitor(store, clock, callbacks):
    """30 min idle, 8 h absolute, 5 min warning, started at T0"""
    monitor = SessionMonitor(
        Session(principal_id="staff-1"),
        store,
        config=SessionSecurityConfig(),
        clock=clock,
        on_warning=callbacks.on_warning,
        on_terminated=callbacks.on_terminated,
    )
    monitor.start(schedule=False)
    return monitor


class TestStart:

    def test_deadlines(self, monitor, t0):
        assert monitor.state is MonitorState.ACTIVE
        assert monitor.warning_at == t0 + timedelta(minutes=25)
        assert monitor.idle_deadline == t0 + timedelta(minutes=30)
        assert monitor.absolute_deadline == t0 + timedelta(hours=8)
        assert monitor.session.started_at == t0
        assert monitor.session.active is True

    def test_start_is_idempotent(self, monitor, clock, t0):
        clock.advance(minutes=10)
        monitor.start(schedule=False)

        assert monitor.idle_deadline == t0 + timedelta(minutes=30)


class TestIdleTimeout:

    async def test_no_warning_before_warning_point(self, monitor, clock, callbacks):
        clock.set(minutes=24, seconds=59)

        assert await monitor.check() is MonitorState.ACTIVE
        callbacks.on_warning.assert_not_awaited()

    async def test_warned_at_25_minutes(self, monitor, clock, callbacks):
        clock.set(minutes=25)

        assert await monitor.check() is MonitorState.WARNED
        callbacks.on_warning.assert_awaited_once()
        session, message = callbacks.on_warning.await_args.args
        assert session is monitor.session
        assert "5 minutes" in message

    async def test_warning_emitted_once(self, monitor, clock, callbacks):
        clock.set(minutes=25)
        await monitor.check()
        clock.set(minutes=27)
        await monitor.check()

        callbacks.on_warning.assert_awaited_once()

    async def test_terminated_idle_at_30_minutes(self, monitor, clock, callbacks, store):
        clock.set(minutes=25)
        await monitor.check()
        clock.set(minutes=30)

        assert await monitor.check() is MonitorState.TERMINATED
        assert monitor.session.active is False
        assert monitor.session.termination_reason is TerminationReason.IDLE
        assert monitor.session.ended_at == clock()
        assert monitor.session.session_id in store.revoked_sessions
        callbacks.on_terminated.assert_awaited_once_with(monitor.session, TerminationReason.IDLE)

    async def test_activity_at_20_minutes_moves_deadlines(self, monitor, clock, t0):
        clock.set(minutes=20)
        assert await monitor.record_activity() is True

        assert monitor.warning_at == t0 + timedelta(minutes=45)
        assert monitor.idle_deadline == t0 + timedelta(minutes=50)

        clock.set(minutes=44, seconds=59)
        assert await monitor.check() is MonitorState.ACTIVE
        clock.set(minutes=45)
        assert await monitor.check() is MonitorState.WARNED
        clock.set(minutes=49, seconds=59)
        assert await monitor.check() is MonitorState.WARNED
        clock.set(minutes=50)
        assert await monitor.check() is MonitorState.TERMINATED
        assert monitor.session.termination_reason is TerminationReason.IDLE

    async def test_activity_after_warning_returns_to_active(self, monitor, clock, t0):
        clock.set(minutes=26)
        await monitor.check()
        assert monitor.state is MonitorState.WARNED

        assert await monitor.record_activity() is True
        assert monitor.state is MonitorState.ACTIVE
        assert monitor.idle_deadline == t0 + timedelta(minutes=56)

    async def test_late_activity_cannot_revive(self, monitor, clock, callbacks):
        # Idle deadline passed but no timer ran yet
        clock.set(minutes=31)

        assert await monitor.record_activity() is False
        assert monitor.state is MonitorState.TERMINATED
        assert monitor.session.termination_reason is TerminationReason.IDLE
        callbacks.on_terminated.assert_awaited_once()


class TestAbsoluteTimeout:

    async def test_activity_never_postpones_absolute(self, monitor, clock, t0):
        for minute in range(20, 480, 20):
            clock.set(minutes=minute)
            assert await monitor.record_activity() is True
            assert monitor.absolute_deadline == t0 + timedelta(hours=8)

        clock.set(hours=8)
        assert await monitor.record_activity() is False
        assert monitor.session.termination_reason is TerminationReason.ABSOLUTE

    async def test_absolute_via_check(self, monitor, clock):
        clock.set(hours=7, minutes=50)
        await monitor.record_activity()
        clock.set(hours=8)

        assert await monitor.check() is MonitorState.TERMINATED
        assert monitor.session.termination_reason is TerminationReason.ABSOLUTE

    async def test_earlier_deadline_decides_when_both_passed(self, monitor, clock):
        clock.set(hours=7, minutes=45)
        await monitor.record_activity()
        # Idle deadline 8:15 and absolute 8:00 have both passed
        clock.set(hours=9)

        await monitor.check()
        assert monitor.session.termination_reason is TerminationReason.ABSOLUTE


class TestTermination:

    async def test_logout(self, monitor, callbacks, store):
        assert await monitor.logout() is True

        assert monitor.state is MonitorState.TERMINATED
        assert monitor.session.termination_reason is TerminationReason.LOGOUT
        assert monitor.session.session_id in store.revoked_sessions
        callbacks.on_terminated.assert_awaited_once_with(monitor.session, TerminationReason.LOGOUT)

    async def test_termination_is_idempotent(self, monitor, clock, callbacks):
        store_revoke = AsyncMock()
        monitor.store.revoke_session = store_revoke

        assert await monitor.logout() is True
        assert await monitor.logout() is False
        clock.set(hours=9)
        assert await monitor.check() is MonitorState.TERMINATED

        store_revoke.assert_awaited_once()
        callbacks.on_terminated.assert_awaited_once()
        assert monitor.session.termination_reason is TerminationReason.LOGOUT

    async def test_activity_after_termination_ignored(self, monitor, clock):
        await monitor.logout()
        deadline = monitor.idle_deadline
        clock.set(minutes=5)

        assert await monitor.record_activity() is False
        assert monitor.idle_deadline == deadline
        assert monitor.state is MonitorState.TERMINATED

    async def test_revoke_failure_still_terminates(self, monitor, store, callbacks):
        store.fail_operations.add("revoke_session")

        assert await monitor.logout() is True
        assert monitor.session.active is False
        callbacks.on_terminated.assert_awaited_once()

    async def test_callback_failure_does_not_break_termination(self, store, clock):
        def explode(session, reason):
            raise RuntimeError("ui gone")

        monitor = SessionMonitor(Session(principal_id="staff-1"), store, clock=clock, on_terminated=explode)
        monitor.start(schedule=False)

        assert await monitor.logout() is True
        assert monitor.is_terminated

    async def test_sync_callbacks_supported(self, store, clock):
        seen = []
        monitor = SessionMonitor(
            Session(principal_id="staff-1"),
            store,
            clock=clock,
            on_warning=lambda session, message: seen.append(("warning", message)),
            on_terminated=lambda session, reason: seen.append(("terminated", reason)),
        )
        monitor.start(schedule=False)

        clock.set(minutes=25)
        await monitor.check()
        clock.set(minutes=30)
        await monitor.check()

        assert [kind for kind, _ in seen] == ["warning", "terminated"]
        assert seen[1][1] is TerminationReason.IDLE


class TestHeartbeat:

    async def test_persists_last_activity_and_refreshed_expiry(self, monitor, clock, store, t0):
        clock.set(minutes=10)
        await monitor.record_activity()
        clock.set(minutes=15)

        assert await monitor.heartbeat() is True

        beat = store.heartbeats[monitor.session_id]
        assert beat["last_activity"] == t0 + timedelta(minutes=10)
        assert beat["expires_at"] == t0 + timedelta(minutes=40)
        assert monitor.session.last_heartbeat_at == t0 + timedelta(minutes=15)

    async def test_failure_logged_state_unchanged(self, monitor, store, clock, t0):
        store.fail_operations.add("persist_heartbeat")
        clock.set(minutes=5)

        assert await monitor.heartbeat() is False
        assert monitor.heartbeat_failures == 1
        assert monitor.state is MonitorState.ACTIVE
        assert monitor.idle_deadline == t0 + timedelta(minutes=30)

    async def test_unexpected_failure_also_contained(self, monitor):
        monitor.store.persist_heartbeat = AsyncMock(side_effect=ConnectionError("reset"))

        assert await monitor.heartbeat() is False
        assert monitor.state is MonitorState.ACTIVE

    async def test_no_heartbeat_after_termination(self, monitor, store):
        await monitor.logout()

        assert await monitor.heartbeat() is False
        assert monitor.session_id not in store.heartbeats


class TestStatus:

    async def test_status_reports_warning(self, monitor, clock):
        clock.set(minutes=25)
        await monitor.check()

        status = monitor.get_status()
        assert status["state"] == "warned"
        assert status["warning"] is not None
        assert status["termination_reason"] is None
        assert "token" not in status

    async def test_status_after_logout(self, monitor):
        await monitor.logout()

        status = monitor.get_status()
        assert status["active"] is False
        assert status["termination_reason"] == "logout"


class TestConfig:

    def test_defaults(self):
        config = SessionSecurityConfig()

        assert config.idle_timeout == timedelta(minutes=30)
        assert config.session_timeout == timedelta(hours=8)
        assert config.warning_time == timedelta(minutes=5)
        assert config.heartbeat_interval == timedelta(minutes=5)

    def test_warning_must_be_shorter_than_idle(self):
        with pytest.raises(ConfigurationError):
            SessionSecurityConfig(idle_timeout=timedelta(minutes=5), warning_time=timedelta(minutes=5))

    @pytest.mark.parametrize("field", ["idle_timeout", "session_timeout", "warning_time", "heartbeat_interval"])
    def test_non_positive_rejected(self, field):
        with pytest.raises(ConfigurationError):
            SessionSecurityConfig(**{field: timedelta(0)})

    def test_from_settings(self):
        config = SessionSecurityConfig.from_settings(
            Settings(IDLE_TIMEOUT_MINUTES=15, SESSION_TIMEOUT_MINUTES=60, WARNING_TIME_MINUTES=2,
                     HEARTBEAT_INTERVAL_SECONDS=30)
        )

        assert config.idle_timeout == timedelta(minutes=15)
        assert config.session_timeout == timedelta(hours=1)
        assert config.warning_time == timedelta(minutes=2)
        assert config.heartbeat_interval == timedelta(seconds=30)

    def test_warning_message(self):
        assert "1 minute " in SessionSecurityConfig(warning_time=timedelta(minutes=1)).warning_message
        assert "less than a minute" in SessionSecurityConfig(warning_time=timedelta(seconds=20)).warning_message


class TestScheduledTimers:

    async def test_timer_and_heartbeat_tasks_drive_the_session(self, store):
        persist = AsyncMock(wraps=store.persist_heartbeat)
        store.persist_heartbeat = persist
        warned = asyncio.Event()
        ended = asyncio.Event()

        monitor = SessionMonitor(
            Session(principal_id="staff-1"),
            store,
            config=SessionSecurityConfig(
                idle_timeout=timedelta(milliseconds=300),
                warning_time=timedelta(milliseconds=200),
                session_timeout=timedelta(seconds=30),
                heartbeat_interval=timedelta(milliseconds=50),
            ),
            on_warning=lambda session, message: warned.set(),
            on_terminated=lambda session, reason: ended.set(),
        )
        monitor.start()

        await asyncio.wait_for(ended.wait(), timeout=5)

        assert warned.is_set()
        assert monitor.session.termination_reason is TerminationReason.IDLE
        assert persist.await_count >= 1
        assert monitor._timer_task is None
        assert monitor._heartbeat_task is None

    async def test_logout_cancels_tasks(self, store):
        monitor = SessionMonitor(Session(principal_id="staff-1"), store)
        monitor.start()
        timer, heartbeat = monitor._timer_task, monitor._heartbeat_task

        await monitor.logout()
        await asyncio.gather(timer, heartbeat, return_exceptions=True)

        assert timer.cancelled()
        assert heartbeat.cancelled()

    async def test_shutdown_stops_tasks_without_ending_session(self, store):
        monitor = SessionMonitor(Session(principal_id="staff-1"), store)
        monitor.start()

        await monitor.shutdown()

        assert monitor.session.active is True
        assert monitor._timer_task is None
