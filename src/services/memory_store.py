# src/services/memory_store.py
"""
In-memory SecureStore.

Reference collaborator for tests and local runs. Heartbeats and revocations
can be delegated to a RedisSessionRegistry so they survive restarts even
when records live in memory.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from src.core.exceptions import StoreUnavailableError
from src.models.records import AccessLogEntry, ClientRecord, ClientSummary
from src.models.session_state import Session
from src.services.session_registry import RedisSessionRegistry
from src.services.store import SecureStore

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("first_name", "last_name", "email", "phone")


class InMemorySecureStore(SecureStore):
    """
    Dict-backed store.

    ``fail_operations`` makes the named operations raise
    StoreUnavailableError, which is how tests simulate an outage.
    """

    def __init__(self, session_registry: Optional[RedisSessionRegistry] = None):
        self.session_registry = session_registry
        self.records: Dict[str, ClientRecord] = {}
        self.roles: Dict[str, Set[str]] = {}
        self.audit_log: List[AccessLogEntry] = []
        self.heartbeats: Dict[str, Dict[str, datetime]] = {}
        self.revoked_sessions: Dict[str, datetime] = {}
        self.fail_operations: Set[str] = set()
        self._audit_lock = asyncio.Lock()

    # -- seeding -------------------------------------------------------------

    def add_record(self, record: ClientRecord) -> None:
        self.records[record.id] = record

    def add_records(self, records: Iterable[ClientRecord]) -> None:
        for record in records:
            self.add_record(record)

    def grant_roles(self, principal_id: str, *roles: str) -> None:
        self.roles.setdefault(principal_id, set()).update(roles)

    def revoke_roles(self, principal_id: str) -> None:
        self.roles.pop(principal_id, None)

    # -- SecureStore ---------------------------------------------------------

    def _check(self, operation: str) -> None:
        if operation in self.fail_operations:
            raise StoreUnavailableError("Simulated store outage", operation=operation)

    async def get_roles(self, principal_id: str) -> FrozenSet[str]:
        self._check("get_roles")
        return frozenset(self.roles.get(principal_id, set()))

    async def read_full(self, record_id: str) -> Optional[ClientRecord]:
        self._check("read_full")
        return self.records.get(record_id)

    async def read_summary(self, record_id: str) -> Optional[ClientSummary]:
        self._check("read_summary")
        record = self.records.get(record_id)
        return record.to_summary() if record else None

    async def find_by_text(self, term: str, limit: int) -> List[str]:
        self._check("find_by_text")
        needle = term.lower()
        matches = []
        for record in self.records.values():
            values = (getattr(record, field) or "" for field in SEARCH_FIELDS)
            if any(needle in value.lower() for value in values):
                matches.append(record.id)
                if len(matches) >= limit:
                    break
        return matches

    async def append_audit_entry(self, entry: AccessLogEntry) -> None:
        self._check("append_audit_entry")
        async with self._audit_lock:
            self.audit_log.append(entry)

    async def list_audit_entries(self, record_id: Optional[str], since: datetime) -> List[AccessLogEntry]:
        self._check("list_audit_entries")
        return [
            entry for entry in self.audit_log
            if entry.accessed_at >= since and (record_id is None or entry.record_id == record_id)
        ]

    async def revoke_session(self, session: Session) -> None:
        self._check("revoke_session")
        revoked_at = session.ended_at or datetime.now(timezone.utc)
        if self.session_registry is not None:
            reason = session.termination_reason.value if session.termination_reason else None
            await self.session_registry.record_revocation(
                session.session_id, session.principal_id, revoked_at, reason
            )
        self.revoked_sessions[session.session_id] = revoked_at
        self.heartbeats.pop(session.session_id, None)

    async def persist_heartbeat(self, session_id: str, last_activity: datetime, new_expiry: datetime) -> None:
        self._check("persist_heartbeat")
        if self.session_registry is not None:
            await self.session_registry.record_heartbeat(session_id, last_activity, new_expiry)
        self.heartbeats[session_id] = {"last_activity": last_activity, "expires_at": new_expiry}
