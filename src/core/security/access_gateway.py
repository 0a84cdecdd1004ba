"""
Secure Access Gateway.

Every read of a protected client record goes through here. Each read is
role-checked against the principal's current roles and leaves exactly one
entry in the audit log, including denied reads and reads of records that do
not exist.

Outcomes are returned as ``AccessResult`` values rather than raised, so
callers can render the caller-safe message without try/except around every
read. ``AccessResult.raise_for_outcome()`` gives the exception form.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from src.core.exceptions import (
    CaseVaultError,
    InputValidationError,
    RecordNotFoundError,
    StoreUnavailableError,
    access_denied,
    session_terminated,
    store_unavailable,
)
from src.core.security.roles import Role, RoleSet, can_read_access_log, can_read_protected
from src.models.records import AccessLogEntry, AccessType, ClientRecord, ClientSummary
from src.models.session_state import Session
from src.services.store import SecureStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SEARCH_LIMIT = 50
DEFAULT_SEARCH_CONCURRENCY = 8
DEFAULT_ACCESS_LOG_DAYS = 30


class AccessOutcome(str, Enum):
    OK = "ok"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    SESSION_TERMINATED = "session_terminated"


@dataclass
class AccessResult(Generic[T]):
    """Typed outcome of one gateway operation"""
    outcome: AccessOutcome
    data: Optional[T] = None
    error: Optional[CaseVaultError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is AccessOutcome.OK

    @property
    def message(self) -> Optional[str]:
        """Caller-safe message; never says whether a record exists"""
        return self.error.user_message if self.error else None

    def raise_for_outcome(self) -> T:
        """Return the data, or raise the error behind a failed outcome"""
        if self.error is not None:
            raise self.error
        return self.data

    @classmethod
    def success(cls, data: T) -> "AccessResult[T]":
        return cls(outcome=AccessOutcome.OK, data=data)

    @classmethod
    def failure(cls, error: CaseVaultError) -> "AccessResult[T]":
        return cls(outcome=AccessOutcome(error.error_kind), error=error)


class SecureAccessGateway:
    """
    Role-gated, audited reads bound to one session and caller origin.

    A gateway is cheap; hosts create one per request.
    """

    def __init__(
        self,
        store: SecureStore,
        session: Session,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
        search_concurrency: int = DEFAULT_SEARCH_CONCURRENCY,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.session = session
        self.ip_address = ip_address
        self.user_agent = user_agent
        self.search_limit = search_limit
        self.search_concurrency = max(1, search_concurrency)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def principal_id(self) -> str:
        return self.session.principal_id

    # -- public operations ---------------------------------------------------

    async def get_full(self, record_id: str) -> AccessResult[ClientRecord]:
        """Full client record, for detail views that need every field"""
        return await self._read(record_id, AccessType.FULL)

    async def get_summary(self, record_id: str) -> AccessResult[ClientSummary]:
        """Minimized client record for lists and routine work"""
        return await self._read(record_id, AccessType.SUMMARY)

    async def search(self, term: str) -> AccessResult[List[ClientSummary]]:
        """
        Find clients by first name, last name, email or phone.

        The search itself is audited once, and every matched record is then
        read through the summary tier, which audits each read on its own.
        Reads that fail, including hits the caller is no longer authorised
        for, are left out of the result.
        """
        if not self.session.active:
            return self._terminated()

        term = (term or "").strip()

        try:
            roles = await self._resolve_roles()
        except StoreUnavailableError as e:
            await self._audit(AccessType.DENIED, None)
            return AccessResult.failure(e)

        if not can_read_protected(roles):
            return await self._deny(None, Role.STAFF)

        record_ids: List[str] = []
        search_error = None
        if term:
            try:
                record_ids = await self._call("find_by_text", self.store.find_by_text(term, self.search_limit))
            except StoreUnavailableError as e:
                search_error = e

        audit_error = await self._audit(AccessType.SEARCH, None)
        if audit_error is not None:
            return AccessResult.failure(audit_error)
        if search_error is not None:
            return AccessResult.failure(search_error)

        record_ids = record_ids[:self.search_limit]
        semaphore = asyncio.Semaphore(self.search_concurrency)

        async def read_one(record_id: str) -> AccessResult[ClientSummary]:
            async with semaphore:
                return await self._read(record_id, AccessType.SUMMARY)

        results = await asyncio.gather(*(read_one(record_id) for record_id in record_ids))

        if not self.session.active:
            return self._terminated()

        summaries = [result.data for result in results if result.ok]
        if len(summaries) < len(results):
            logger.info(f"Search returned {len(summaries)} of {len(results)} matches; the rest failed")
        return AccessResult.success(summaries)

    async def get_access_log(
        self,
        record_id: Optional[str] = None,
        window_days: int = DEFAULT_ACCESS_LOG_DAYS
    ) -> AccessResult[List[AccessLogEntry]]:
        """
        Audit entries for one record, or all records, newest first.

        Admin only. Reading the log is not itself logged.

        Raises:
            InputValidationError: If ``window_days`` is not positive
        """
        if window_days <= 0:
            raise InputValidationError("window_days must be positive", field="window_days", value=window_days)

        if not self.session.active:
            return self._terminated()

        try:
            roles = await self._resolve_roles()
        except StoreUnavailableError as e:
            return AccessResult.failure(e)

        if not can_read_access_log(roles):
            logger.warning(f"🚫 Access log read denied for principal {self.principal_id}")
            return AccessResult.failure(access_denied(self.principal_id, Role.ADMIN.value))

        since = self._clock() - timedelta(days=window_days)
        try:
            entries = await self._call("list_audit_entries", self.store.list_audit_entries(record_id, since))
        except StoreUnavailableError as e:
            return AccessResult.failure(e)

        if not self.session.active:
            return self._terminated()

        entries = sorted(
            (entry for entry in entries if entry.accessed_at >= since),
            key=lambda entry: entry.accessed_at,
            reverse=True
        )
        return AccessResult.success(entries)

    # -- internals -----------------------------------------------------------

    async def _read(
        self,
        record_id: str,
        access_type: AccessType
    ) -> AccessResult[Any]:
        if not self.session.active:
            return self._terminated()

        # Roles are looked up per read, so a role withdrawn mid-search
        # stops the remaining hits
        try:
            roles = await self._resolve_roles()
        except StoreUnavailableError as e:
            await self._audit(AccessType.DENIED, record_id)
            return AccessResult.failure(e)

        if not can_read_protected(roles):
            return await self._deny(record_id, Role.STAFF)

        if access_type is AccessType.FULL:
            reader = self.store.read_full(record_id)
        else:
            reader = self.store.read_summary(record_id)

        data = None
        read_error = None
        try:
            data = await self._call(f"read_{access_type.value}", reader)
        except StoreUnavailableError as e:
            read_error = e

        audit_error = await self._audit(access_type, record_id)

        if not self.session.active:
            return self._terminated()
        if audit_error is not None:
            # Data is withheld when the read could not be logged
            return AccessResult.failure(audit_error)
        if read_error is not None:
            return AccessResult.failure(read_error)
        if data is None:
            return AccessResult.failure(RecordNotFoundError("Client record not found", record_id=record_id))
        return AccessResult.success(data)

    async def _deny(self, record_id: Optional[str], required_role: Role) -> AccessResult[Any]:
        logger.warning(
            f"🚫 Access denied for principal {self.principal_id} "
            f"(record {record_id or '-'}, requires {required_role.value})"
        )
        audit_error = await self._audit(AccessType.DENIED, record_id)
        if audit_error is not None:
            return AccessResult.failure(audit_error)
        return AccessResult.failure(access_denied(self.principal_id, required_role.value))

    async def _resolve_roles(self) -> RoleSet:
        tags = await self._call("get_roles", self.store.get_roles(self.principal_id))
        return RoleSet.from_tags(self.principal_id, tags)

    async def _audit(self, access_type: AccessType, record_id: Optional[str]) -> Optional[StoreUnavailableError]:
        """Append one audit entry. Returns the error instead of raising."""
        entry = AccessLogEntry(
            accessed_at=self._clock(),
            principal_id=self.principal_id,
            access_type=access_type,
            record_id=record_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )
        try:
            await self._call("append_audit_entry", self.store.append_audit_entry(entry))
        except StoreUnavailableError as e:
            logger.error(
                f"Audit append failed for principal {self.principal_id} "
                f"({access_type.value}, record {record_id or '-'}): {e}"
            )
            return e
        return None

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a store call, folding unexpected failures into StoreUnavailableError"""
        try:
            return await awaitable
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise store_unavailable(operation, e) from e

    def _terminated(self) -> AccessResult[Any]:
        reason = self.session.termination_reason.value if self.session.termination_reason else None
        return AccessResult.failure(session_terminated(self.session.session_id, reason))
