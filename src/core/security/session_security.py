"""
Secure session store.

Creates monitored sessions on successful authentication and hands out opaque
tokens for them:
- A principal without any role never gets a session
- Optional organisation e-mail domain restriction
- Tokens are compared in constant time
- Terminated sessions are cleaned up periodically
- A user agent change mid-session is logged as a security event

The authentication itself happens in front of this module; what arrives here
is an already authenticated principal.
"""

from typing import Any, Callable, Dict, Optional, Tuple
from datetime import datetime, timedelta, timezone
import logging

from src.core.exceptions import AccessDeniedError, ConfigurationError
from src.core.security.roles import RoleSet
from src.core.security.session_monitor import (
    SessionMonitor,
    SessionSecurityConfig,
    TerminatedCallback,
    WarningCallback,
)
from src.models.session_state import Session, SessionToken, TerminationReason
from src.services.store import SecureStore

logger = logging.getLogger(__name__)


class SecureSessionStore:
    """
    Token-guarded registry of monitored sessions.

    Fail-secure: no auto-creation, lookups return None for anything that is
    unknown, mismatched or already terminated.
    """

    def __init__(
        self,
        store: SecureStore,
        config: Optional[SessionSecurityConfig] = None,
        organization_domain: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_warning: Optional[WarningCallback] = None,
        on_terminated: Optional[TerminatedCallback] = None,
        schedule_timers: bool = True,
        user_agent_mismatch_action: str = "terminate"
    ):
        self.store = store
        self.config = config or SessionSecurityConfig.from_settings()
        self.organization_domain = organization_domain.lower().lstrip("@") if organization_domain else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.on_warning = on_warning
        self.on_terminated = on_terminated
        self.schedule_timers = schedule_timers
        self.user_agent_mismatch_action = user_agent_mismatch_action

        self._monitors: Dict[str, SessionMonitor] = {}
        self._tokens: Dict[str, SessionToken] = {}

        # Cleanup configuration
        self._cleanup_interval = timedelta(minutes=5)
        self._last_cleanup = self._clock()

        # Metrics for monitoring
        self._creation_count = 0
        self._rejected_count = 0
        self._validation_failures = 0
        self._cleaned_count = 0
        self._user_agent_mismatches = 0

    def _check_domain(self, principal_id: str, email: Optional[str]) -> None:
        if not self.organization_domain:
            return
        domain = email.rsplit("@", 1)[1].lower() if email and "@" in email else None
        if domain != self.organization_domain:
            self._rejected_count += 1
            logger.warning(f"🚫 Session refused for principal {principal_id}: outside organisation domain")
            raise AccessDeniedError(
                "Principal is not part of the organisation",
                principal_id=principal_id,
                details={"reason": "organization_domain"}
            )

    async def create_session(
        self,
        principal_id: str,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Tuple[SessionMonitor, str]:
        """
        Create and start a monitored session for an authenticated principal.

        Returns:
            Tuple of (SessionMonitor, token_string)

        Raises:
            AccessDeniedError: Principal holds no role or is outside the
                organisation domain
            StoreUnavailableError: Roles could not be looked up
        """
        self._check_domain(principal_id, email)

        roles = RoleSet.from_tags(principal_id, await self.store.get_roles(principal_id))
        if roles.is_empty:
            self._rejected_count += 1
            logger.warning(f"🚫 Session refused for principal {principal_id}: no role assigned")
            raise AccessDeniedError(
                "Principal has no role",
                principal_id=principal_id,
                details={"reason": "no_role"}
            )

        session = Session(principal_id=principal_id, ip_address=ip_address, user_agent=user_agent)
        monitor = SessionMonitor(
            session,
            self.store,
            config=self.config,
            clock=self._clock,
            on_warning=self.on_warning,
            on_terminated=self.on_terminated,
        )
        monitor.start(schedule=self.schedule_timers)

        token = SessionToken(created_at=self._clock())
        self._monitors[session.session_id] = monitor
        self._tokens[session.session_id] = token
        self._creation_count += 1

        self._cleanup_terminated()

        logger.info(f"🔐 Created secure session {session.session_id[:8]}... for principal {principal_id}")
        return monitor, token.token

    async def validate_and_get_session(
        self,
        session_id: str,
        token: str,
        user_agent: Optional[str] = None
    ) -> Optional[SessionMonitor]:
        """
        Validate token and return the session monitor if the session is live.

        Deadlines are evaluated on the way, so an expired session is
        terminated here even if its timer has not fired yet.

        Args:
            session_id: Session to look up
            token: Token handed out by ``create_session``
            user_agent: User agent of the current request. A change against
                the one the session was created with is treated as a possible
                hijack and handled per ``user_agent_mismatch_action``.

        Returns:
            SessionMonitor if valid, None if unknown, mismatched or terminated
        """
        monitor = self._monitors.get(session_id)
        if not monitor:
            logger.debug(f"Session {session_id[:8]}... not found")
            return None

        session_token = self._tokens.get(session_id)
        if not session_token or not session_token.validate(token):
            logger.warning(f"🔒 Invalid token for session {session_id[:8]}...")
            self._validation_failures += 1
            return None

        await monitor.check()
        if monitor.is_terminated:
            logger.info(f"⏰ Session {session_id[:8]}... is no longer active")
            self.delete_session(session_id)
            return None

        if not self._user_agent_matches(monitor, user_agent):
            return await self._handle_user_agent_mismatch(monitor)

        return monitor

    def _user_agent_matches(self, monitor: SessionMonitor, user_agent: Optional[str]) -> bool:
        expected = monitor.session.user_agent
        if user_agent is None or expected is None:
            return True
        return user_agent == expected

    async def _handle_user_agent_mismatch(self, monitor: SessionMonitor) -> None:
        self._user_agent_mismatches += 1
        logger.warning(
            f"🚨 Security event: user agent changed for session {monitor.session_id[:8]}... "
            f"(principal {monitor.session.principal_id}, action {self.user_agent_mismatch_action})"
        )
        if self.user_agent_mismatch_action == "terminate":
            await monitor.terminate(TerminationReason.SUSPICIOUS)
            self.delete_session(monitor.session_id)
        return None

    async def logout(self, session_id: str) -> bool:
        """End a session explicitly. Returns True if it was live."""
        monitor = self._monitors.get(session_id)
        if not monitor:
            return False
        ended = await monitor.logout()
        self.delete_session(session_id)
        return ended

    def delete_session(self, session_id: str) -> None:
        """Forget a session and its token. Does not terminate it."""
        self._monitors.pop(session_id, None)
        if self._tokens.pop(session_id, None) is not None:
            logger.debug(f"🗑️ Deleted session {session_id[:8]}...")

    def _cleanup_terminated(self) -> None:
        """Drop terminated sessions, at most once per cleanup interval"""
        now = self._clock()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        terminated_ids = [sid for sid, monitor in self._monitors.items() if monitor.is_terminated]
        for sid in terminated_ids:
            self.delete_session(sid)

        self._last_cleanup = now
        self._cleaned_count += len(terminated_ids)

        if terminated_ids:
            logger.info(f"🧹 Cleaned up {len(terminated_ids)} terminated sessions")

    async def shutdown(self, terminate: bool = False) -> None:
        """
        Stop every monitor.

        Args:
            terminate: End the sessions as a logout instead of only stopping
                their background tasks
        """
        monitors = list(self._monitors.values())
        for monitor in monitors:
            if terminate:
                await monitor.terminate(TerminationReason.LOGOUT)
            await monitor.shutdown()
        if terminate:
            self._monitors.clear()
            self._tokens.clear()
        logger.info(f"Stopped {len(monitors)} session monitors")

    def get_metrics(self) -> Dict[str, int]:
        return {
            "active_sessions": sum(1 for m in self._monitors.values() if not m.is_terminated),
            "tracked_sessions": len(self._monitors),
            "total_created": self._creation_count,
            "rejected": self._rejected_count,
            "validation_failures": self._validation_failures,
            "terminated_cleaned": self._cleaned_count,
            "user_agent_mismatches": self._user_agent_mismatches,
        }

    def get_session_info(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        Get session information for debugging (no token exposed).

        Used by admin/debug endpoints only.
        """
        monitor = self._monitors.get(session_id)
        token = self._tokens.get(session_id)

        if not monitor or not token:
            return None

        info = monitor.get_status()
        info["token_created_at"] = token.created_at.isoformat()
        return info


# Global instance - initialized in main.py
secure_session_store: Optional[SecureSessionStore] = None


def get_secure_session_store() -> SecureSessionStore:
    """
    Get the global secure session store instance.

    Follows FastAPI dependency injection pattern.
    """
    if secure_session_store is None:
        raise ConfigurationError("SecureSessionStore not initialized", component="SecureSessionStore")
    return secure_session_store


def init_secure_session_store(store: SecureStore, **kwargs) -> SecureSessionStore:
    """Initialize the global secure session store"""
    global secure_session_store
    secure_session_store = SecureSessionStore(store, **kwargs)
    logger.info("🔐 Initialized SecureSessionStore")
    return secure_session_store
