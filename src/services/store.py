# src/services/store.py
"""
Contract of the persistence/identity collaborator.

The secure access core never talks to a database directly. Everything it
needs from storage goes through a ``SecureStore``. Implementations return
``None`` for "no such record" and raise ``StoreUnavailableError`` for
backend or transport failures, so the two are never confused.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import FrozenSet, List, Optional, TYPE_CHECKING

from src.models.records import AccessLogEntry, ClientRecord, ClientSummary

if TYPE_CHECKING:
    from src.models.session_state import Session


class SecureStore(ABC):
    """Record CRUD, role lookup, audit log and session bookkeeping"""

    @abstractmethod
    async def get_roles(self, principal_id: str) -> FrozenSet[str]:
        """Return the raw role tags held by ``principal_id`` (possibly empty)"""

    @abstractmethod
    async def read_full(self, record_id: str) -> Optional[ClientRecord]:
        """Return the full projection, or None if the record does not exist"""

    @abstractmethod
    async def read_summary(self, record_id: str) -> Optional[ClientSummary]:
        """Return the summary projection, or None if the record does not exist"""

    @abstractmethod
    async def find_by_text(self, term: str, limit: int) -> List[str]:
        """
        Case-insensitive substring match on first name, last name, email
        and phone. Returns at most ``limit`` record ids.
        """

    @abstractmethod
    async def append_audit_entry(self, entry: AccessLogEntry) -> None:
        """Append one entry to the audit log. Raises on failure."""

    @abstractmethod
    async def list_audit_entries(
        self,
        record_id: Optional[str],
        since: datetime
    ) -> List[AccessLogEntry]:
        """Audit entries at or after ``since``, for one record or all records"""

    @abstractmethod
    async def revoke_session(self, session: "Session") -> None:
        """Revoke the underlying authentication session"""

    @abstractmethod
    async def persist_heartbeat(
        self,
        session_id: str,
        last_activity: datetime,
        new_expiry: datetime
    ) -> None:
        """Durably record the session's last activity and idle expiry"""
