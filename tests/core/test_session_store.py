# tests/core/test_session_store.py
"""
Tests for the secure session store: session creation, token validation,
expiry and cleanup.
"""

from unittest.mock import patch

import pytest

from src.core.exceptions import AccessDeniedError, ConfigurationError, StoreUnavailableError
from src.core.security import session_security
from src.core.security.session_monitor import SessionSecurityConfig
from src.core.security.session_security import (
    SecureSessionStore,
    get_secure_session_store,
    init_secure_session_store,
)
from src.models.session_state import MonitorState, TerminationReason


@pytest.fixture
def session_store(memory_store, clock):
    return SecureSessionStore(
        memory_store,
        config=SessionSecurityConfig(),
        clock=clock,
        schedule_timers=False
    )


class TestCreateSession:

    async def test_create_and_validate(self, session_store):
        monitor, token = await session_store.create_session("staff-1", ip_address="10.0.0.1")

        assert len(token) >= 32
        assert monitor.state is MonitorState.ACTIVE
        assert monitor.session.ip_address == "10.0.0.1"
        assert await session_store.validate_and_get_session(monitor.session_id, token) is monitor

    async def test_sessions_are_independent(self, session_store):
        first, first_token = await session_store.create_session("staff-1")
        second, second_token = await session_store.create_session("admin-1")

        assert first.session_id != second.session_id
        assert first_token != second_token
        assert await session_store.validate_and_get_session(first.session_id, second_token) is None

    async def test_principal_without_role_refused(self, session_store, memory_store):
        with pytest.raises(AccessDeniedError):
            await session_store.create_session("nobody")

        # Unknown tags do not count as a role either
        with pytest.raises(AccessDeniedError):
            await session_store.create_session("guest-1")

        assert session_store.get_metrics()["rejected"] == 2
        assert session_store.get_metrics()["tracked_sessions"] == 0

    async def test_role_lookup_failure_propagates(self, session_store, memory_store):
        memory_store.fail_operations.add("get_roles")

        with pytest.raises(StoreUnavailableError):
            await session_store.create_session("staff-1")

    async def test_organisation_domain(self, memory_store, clock):
        session_store = SecureSessionStore(
            memory_store,
            organization_domain="@Example.org",
            clock=clock,
            schedule_timers=False
        )

        monitor, _ = await session_store.create_session("staff-1", email="jane@EXAMPLE.org")
        assert monitor.session.principal_id == "staff-1"

        for email in ("jane@elsewhere.org", "no-at-sign", None):
            with pytest.raises(AccessDeniedError):
                await session_store.create_session("staff-1", email=email)


class TestValidation:

    async def test_wrong_token(self, session_store):
        monitor, _ = await session_store.create_session("staff-1")

        assert await session_store.validate_and_get_session(monitor.session_id, "wrong-token-12345") is None
        assert session_store.get_metrics()["validation_failures"] == 1

    async def test_unknown_session(self, session_store):
        assert await session_store.validate_and_get_session("does-not-exist", "token") is None

    async def test_idle_expiry_detected_on_validation(self, session_store, clock, memory_store):
        monitor, token = await session_store.create_session("staff-1")
        clock.set(minutes=31)

        assert await session_store.validate_and_get_session(monitor.session_id, token) is None
        assert monitor.session.termination_reason is TerminationReason.IDLE
        assert monitor.session_id in memory_store.revoked_sessions
        assert session_store.get_session_info(monitor.session_id) is None

    async def test_validation_does_not_count_as_activity(self, session_store, clock):
        monitor, token = await session_store.create_session("staff-1")
        clock.set(minutes=20)
        await session_store.validate_and_get_session(monitor.session_id, token)
        clock.set(minutes=30)

        assert await session_store.validate_and_get_session(monitor.session_id, token) is None


class TestUserAgentBinding:

    async def test_same_user_agent_accepted(self, session_store):
        monitor, token = await session_store.create_session("staff-1", user_agent="case-ui/1.0")

        assert await session_store.validate_and_get_session(
            monitor.session_id, token, user_agent="case-ui/1.0"
        ) is monitor
        assert session_store.get_metrics()["user_agent_mismatches"] == 0

    async def test_changed_user_agent_terminates(self, session_store, memory_store):
        monitor, token = await session_store.create_session("staff-1", user_agent="case-ui/1.0")

        assert await session_store.validate_and_get_session(
            monitor.session_id, token, user_agent="curl/8.0"
        ) is None

        assert monitor.session.termination_reason is TerminationReason.SUSPICIOUS
        assert monitor.session_id in memory_store.revoked_sessions
        assert session_store.get_metrics()["user_agent_mismatches"] == 1
        assert await session_store.validate_and_get_session(
            monitor.session_id, token, user_agent="case-ui/1.0"
        ) is None

    async def test_missing_user_agent_counts_as_change(self, session_store):
        monitor, token = await session_store.create_session("staff-1", user_agent="case-ui/1.0")

        assert await session_store.validate_and_get_session(monitor.session_id, token, user_agent="") is None
        assert monitor.is_terminated

    async def test_reject_only_refuses_the_request(self, memory_store, clock):
        session_store = SecureSessionStore(
            memory_store,
            clock=clock,
            schedule_timers=False,
            user_agent_mismatch_action="reject"
        )
        monitor, token = await session_store.create_session("staff-1", user_agent="case-ui/1.0")

        assert await session_store.validate_and_get_session(
            monitor.session_id, token, user_agent="curl/8.0"
        ) is None
        assert not monitor.is_terminated
        assert session_store.get_metrics()["user_agent_mismatches"] == 1
        assert await session_store.validate_and_get_session(
            monitor.session_id, token, user_agent="case-ui/1.0"
        ) is monitor

    async def test_not_checked_without_recorded_user_agent(self, session_store):
        monitor, token = await session_store.create_session("staff-1")

        assert await session_store.validate_and_get_session(
            monitor.session_id, token, user_agent="anything"
        ) is monitor


class TestLogout:

    async def test_logout(self, session_store, memory_store):
        monitor, token = await session_store.create_session("staff-1")

        assert await session_store.logout(monitor.session_id) is True
        assert monitor.session.termination_reason is TerminationReason.LOGOUT
        assert monitor.session_id in memory_store.revoked_sessions
        assert await session_store.validate_and_get_session(monitor.session_id, token) is None
        assert await session_store.logout(monitor.session_id) is False

    async def test_shutdown_with_terminate(self, session_store):
        monitor, _ = await session_store.create_session("staff-1")

        await session_store.shutdown(terminate=True)

        assert monitor.is_terminated
        assert session_store.get_metrics()["tracked_sessions"] == 0


class TestHousekeeping:

    async def test_session_info_has_no_token(self, session_store, t0):
        monitor, token = await session_store.create_session("staff-1")

        info = session_store.get_session_info(monitor.session_id)

        assert info["principal_id"] == "staff-1"
        assert info["state"] == "active"
        assert info["token_created_at"] == t0.isoformat()
        assert token not in info.values()

    async def test_cleanup_runs_on_interval(self, session_store, clock):
        old, _ = await session_store.create_session("staff-1")
        await old.logout()

        # Within the cleanup interval the terminated session is still tracked
        await session_store.create_session("staff-1")
        assert session_store.get_metrics()["tracked_sessions"] == 2

        clock.advance(minutes=6)
        await session_store.create_session("staff-1")

        metrics = session_store.get_metrics()
        assert metrics["tracked_sessions"] == 2
        assert metrics["active_sessions"] == 2
        assert metrics["terminated_cleaned"] == 1
        assert metrics["total_created"] == 3


class TestGlobalStore:

    def test_uninitialised_store_raises(self):
        with patch.object(session_security, "secure_session_store", None):
            with pytest.raises(ConfigurationError):
                get_secure_session_store()

    def test_init_sets_global(self, memory_store):
        with patch.object(session_security, "secure_session_store", None):
            created = init_secure_session_store(memory_store, schedule_timers=False)

            assert get_secure_session_store() is created
