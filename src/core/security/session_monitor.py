"""
Session Security Monitor.

Keeps an authenticated session alive only as long as policy allows:

- idle timeout, pushed back by every activity signal
- a warning shortly before the idle timeout
- an absolute timeout that activity never moves
- a periodic heartbeat that persists last activity and the refreshed idle expiry

State machine: ACTIVE <-> WARNED -> TERMINATED. TERMINATED is final.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import ConfigurationError
from src.models.session_state import MonitorState, Session, TerminationReason
from src.services.store import SecureStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
WarningCallback = Callable[[Session, str], Union[None, Awaitable[None]]]
TerminatedCallback = Callable[[Session, TerminationReason], Union[None, Awaitable[None]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionSecurityConfig:
    """Timeouts for one monitored session"""
    idle_timeout: timedelta = timedelta(minutes=30)
    session_timeout: timedelta = timedelta(hours=8)
    warning_time: timedelta = timedelta(minutes=5)
    heartbeat_interval: timedelta = timedelta(minutes=5)

    def __post_init__(self):
        for name in ("idle_timeout", "session_timeout", "warning_time", "heartbeat_interval"):
            if getattr(self, name) <= timedelta(0):
                raise ConfigurationError(f"{name} must be positive", component="SessionSecurityConfig")
        if self.warning_time >= self.idle_timeout:
            raise ConfigurationError(
                "warning_time must be shorter than idle_timeout",
                component="SessionSecurityConfig",
                details={
                    "warning_time": self.warning_time.total_seconds(),
                    "idle_timeout": self.idle_timeout.total_seconds(),
                }
            )

    @classmethod
    def from_settings(cls, app_settings: Optional[Settings] = None) -> "SessionSecurityConfig":
        app_settings = app_settings or default_settings
        return cls(
            idle_timeout=timedelta(minutes=app_settings.IDLE_TIMEOUT_MINUTES),
            session_timeout=timedelta(minutes=app_settings.SESSION_TIMEOUT_MINUTES),
            warning_time=timedelta(minutes=app_settings.WARNING_TIME_MINUTES),
            heartbeat_interval=timedelta(seconds=app_settings.HEARTBEAT_INTERVAL_SECONDS),
        )

    @property
    def warning_message(self) -> str:
        minutes = int(self.warning_time.total_seconds() // 60)
        if minutes >= 1:
            remaining = f"{minutes} minute{'s' if minutes != 1 else ''}"
        else:
            remaining = "less than a minute"
        return (
            f"Your session will expire in {remaining} due to inactivity. "
            "Interact with the application to stay logged in."
        )


class SessionMonitor:
    """
    Idle/absolute timeout state machine for one session.

    All state changes happen under one asyncio.Lock. Side effects of a
    transition (revoking the auth session, callbacks, cancelling tasks) run
    after the lock is released, and only for the call that made the
    transition.
    """

    def __init__(
        self,
        session: Session,
        store: SecureStore,
        config: Optional[SessionSecurityConfig] = None,
        clock: Optional[Clock] = None,
        on_warning: Optional[WarningCallback] = None,
        on_terminated: Optional[TerminatedCallback] = None
    ):
        self.session = session
        self.store = store
        self.config = config or SessionSecurityConfig()
        self._clock = clock or _utcnow
        self.on_warning = on_warning
        self.on_terminated = on_terminated

        self.state = MonitorState.ACTIVE
        self.warning_at: Optional[datetime] = None
        self.last_warning: Optional[str] = None
        self.heartbeat_failures = 0

        self._lock = asyncio.Lock()
        self._started = False
        self._timer_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    # -- properties ----------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def idle_deadline(self) -> Optional[datetime]:
        return self.session.idle_expires_at

    @property
    def absolute_deadline(self) -> Optional[datetime]:
        return self.session.absolute_expires_at

    @property
    def is_terminated(self) -> bool:
        return self.state is MonitorState.TERMINATED

    def now(self) -> datetime:
        return self._clock()

    # -- lifecycle -----------------------------------------------------------

    def start(self, schedule: bool = True) -> None:
        """
        Arm the deadlines from the current clock.

        Args:
            schedule: Also start the timer and heartbeat tasks. Requires a
                running event loop. Tests driving a fake clock pass False
                and call ``check`` themselves.
        """
        if self._started:
            return
        self._started = True

        now = self.now()
        self.session.started_at = now
        self.session.last_activity = now
        self.session.absolute_expires_at = now + self.config.session_timeout
        self._arm_idle(now)

        logger.info(
            f"🔐 Monitoring session {self.session_id[:8]}... "
            f"(idle {self.config.idle_timeout}, absolute {self.config.session_timeout})"
        )

        if schedule:
            self._timer_task = asyncio.create_task(self._timer_loop())
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _arm_idle(self, now: datetime) -> None:
        self.session.idle_expires_at = now + self.config.idle_timeout
        self.warning_at = self.session.idle_expires_at - self.config.warning_time

    def _due(self, now: datetime) -> Optional[TerminationReason]:
        """Which deadline has passed at ``now``, the earlier one on a tie of both"""
        idle_passed = now >= self.idle_deadline
        absolute_passed = now >= self.absolute_deadline
        if idle_passed and absolute_passed:
            if self.idle_deadline < self.absolute_deadline:
                return TerminationReason.IDLE
            return TerminationReason.ABSOLUTE
        if absolute_passed:
            return TerminationReason.ABSOLUTE
        if idle_passed:
            return TerminationReason.IDLE
        return None

    # -- activity and clock --------------------------------------------------

    async def record_activity(self) -> bool:
        """
        Apply one activity signal.

        Deadlines are evaluated first, so activity that arrives after the
        session already expired cannot revive it.

        Returns:
            True if the activity was applied, False if the session is over
        """
        async with self._lock:
            if self.is_terminated:
                return False

            now = self.now()
            reason = self._due(now)
            if reason is None:
                self.session.last_activity = now
                self._arm_idle(now)
                if self.state is MonitorState.WARNED:
                    logger.debug(f"Session {self.session_id[:8]}... active again after warning")
                self.state = MonitorState.ACTIVE
                return True

            self._mark_terminated(reason, now)

        await self._after_termination(reason)
        return False

    async def check(self) -> MonitorState:
        """
        Evaluate the deadlines against the current clock and run any
        transition that is due.
        """
        warning = None
        reason = None

        async with self._lock:
            if self.is_terminated:
                return self.state

            now = self.now()
            reason = self._due(now)
            if reason is not None:
                self._mark_terminated(reason, now)
            elif self.state is MonitorState.ACTIVE and now >= self.warning_at:
                self.state = MonitorState.WARNED
                warning = self.config.warning_message
                self.last_warning = warning

        if reason is not None:
            await self._after_termination(reason)
        elif warning is not None:
            logger.info(f"⏰ Session {self.session_id[:8]}... idle warning issued")
            await self._invoke(self.on_warning, self.session, warning)

        return self.state

    async def logout(self) -> bool:
        """
        Explicit logout.

        Returns:
            True if this call ended the session
        """
        return await self.terminate(TerminationReason.LOGOUT)

    async def terminate(self, reason: TerminationReason) -> bool:
        async with self._lock:
            if self.is_terminated:
                return False
            self._mark_terminated(reason, self.now())

        await self._after_termination(reason)
        return True

    def _mark_terminated(self, reason: TerminationReason, now: datetime) -> None:
        # Caller holds the lock
        self.state = MonitorState.TERMINATED
        self.session.deactivate(reason, now)

    async def _after_termination(self, reason: TerminationReason) -> None:
        self._cancel_tasks()

        log = logger.info if reason is TerminationReason.LOGOUT else logger.warning
        log(f"🔒 Session {self.session_id[:8]}... terminated ({reason.value})")

        try:
            await self.store.revoke_session(self.session)
        except Exception as e:
            # Local state stays terminated either way
            logger.error(f"Failed to revoke session {self.session_id[:8]}...: {e}")

        await self._invoke(self.on_terminated, self.session, reason)

    async def _invoke(self, callback: Optional[Callable[..., Any]], *args) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Session callback {getattr(callback, '__name__', callback)} failed: {e}")

    # -- heartbeat -----------------------------------------------------------

    async def heartbeat(self) -> bool:
        """
        Persist last activity and the refreshed idle expiry.

        Failures are logged and leave the in-memory state untouched.

        Returns:
            True if the heartbeat was persisted
        """
        async with self._lock:
            if self.is_terminated:
                return False
            last_activity = self.session.last_activity
            new_expiry = last_activity + self.config.idle_timeout

        try:
            await self.store.persist_heartbeat(self.session_id, last_activity, new_expiry)
        except Exception as e:
            self.heartbeat_failures += 1
            logger.error(f"Heartbeat failed for session {self.session_id[:8]}...: {e}")
            return False

        self.session.last_heartbeat_at = self.now()
        logger.debug(f"💓 Heartbeat persisted for session {self.session_id[:8]}...")
        return True

    # -- background tasks ----------------------------------------------------

    def _next_deadline(self) -> datetime:
        candidates = [self.idle_deadline, self.absolute_deadline]
        if self.state is MonitorState.ACTIVE:
            candidates.append(self.warning_at)
        return min(candidates)

    async def _timer_loop(self) -> None:
        while not self.is_terminated:
            delay = (self._next_deadline() - self.now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.check()

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval.total_seconds()
        while not self.is_terminated:
            await asyncio.sleep(interval)
            if self.is_terminated:
                break
            await self.heartbeat()

    def _cancel_tasks(self) -> None:
        # Termination can happen inside one of these tasks; never cancel the
        # task we are running in, its loop exits on its own.
        current = asyncio.current_task()
        for task in (self._timer_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._timer_task = None
        self._heartbeat_task = None

    async def shutdown(self) -> None:
        """Stop background tasks without ending the session"""
        tasks = [t for t in (self._timer_task, self._heartbeat_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timer_task = None
        self._heartbeat_task = None

    # -- reporting -----------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Session state for status endpoints, no secrets"""
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "session_id": self.session_id,
            "principal_id": self.session.principal_id,
            "state": self.state.value,
            "active": self.session.active,
            "started_at": iso(self.session.started_at),
            "last_activity": iso(self.session.last_activity),
            "warning_at": iso(self.warning_at),
            "idle_expires_at": iso(self.idle_deadline),
            "absolute_expires_at": iso(self.absolute_deadline),
            "ended_at": iso(self.session.ended_at),
            "termination_reason": self.session.termination_reason.value if self.session.termination_reason else None,
            "warning": self.last_warning if self.state is MonitorState.WARNED else None,
        }
