# src/models/session_state.py

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class MonitorState(str, Enum):
    ACTIVE = "active"
    WARNED = "warned"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    IDLE = "idle"
    ABSOLUTE = "absolute"
    LOGOUT = "logout"
    SUSPICIOUS = "suspicious"

    @property
    def message(self) -> str:
        return _TERMINATION_MESSAGES[self]


_TERMINATION_MESSAGES = {
    TerminationReason.IDLE: "You have been logged out due to inactivity.",
    TerminationReason.ABSOLUTE: "Your session has expired for security reasons.",
    TerminationReason.LOGOUT: "You have been logged out.",
    TerminationReason.SUSPICIOUS: "Your session was ended because it was used from a different browser.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """
    One authenticated principal's session.

    The idle expiry and the absolute expiry are independent triggers and are
    never folded into a single deadline. ``active`` flips to False exactly
    once, through ``deactivate``.
    """
    session_id: str = Field(default_factory=lambda: str(uuid4()))
    principal_id: str
    started_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)
    idle_expires_at: Optional[datetime] = None
    absolute_expires_at: Optional[datetime] = None
    active: bool = True
    ended_at: Optional[datetime] = None
    termination_reason: Optional[TerminationReason] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_heartbeat_at: Optional[datetime] = None

    def deactivate(self, reason: TerminationReason, at: datetime) -> bool:
        """
        Mark the session as ended.

        Returns:
            True on the first call, False if the session was already ended
        """
        if not self.active:
            return False
        self.active = False
        self.ended_at = at
        self.termination_reason = reason
        return True


class SessionToken(BaseModel):
    """
    Opaque secret handed to the client for one session.

    Kept apart from Session so the secret never travels with session state
    into logs or heartbeat records.
    """
    token: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    created_at: datetime = Field(default_factory=_utcnow)

    def validate(self, provided_token: str) -> bool:
        """Securely compare tokens"""
        return secrets.compare_digest(self.token, provided_token)
