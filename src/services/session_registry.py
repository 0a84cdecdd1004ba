# src/services/session_registry.py
"""
Durable session bookkeeping on Redis.

Heartbeats and revocations are written here so that session state survives
process restarts and can be inspected by operators. Reads are best effort,
writes are not: a write that did not happen raises StoreUnavailableError.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from src.core.exceptions import RedisServiceError, StoreUnavailableError
from src.services.redis_service import RedisService

logger = logging.getLogger(__name__)

KEY_PREFIX = "casevault:session"


def heartbeat_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:{session_id}:heartbeat"


def revoked_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:{session_id}:revoked"


class RedisSessionRegistry:
    """Heartbeat and revocation records for sessions"""

    def __init__(self, redis_service: RedisService, key_ttl_seconds: int = 24 * 60 * 60):
        self.redis = redis_service
        self.key_ttl_seconds = key_ttl_seconds

    async def record_heartbeat(
        self,
        session_id: str,
        last_activity: datetime,
        idle_expires_at: datetime
    ) -> None:
        payload = {
            "session_id": session_id,
            "last_activity": last_activity.isoformat(),
            "expires_at": idle_expires_at.isoformat(),
            "is_active": True,
        }
        try:
            await self.redis.set(
                heartbeat_key(session_id),
                payload,
                ttl=self.key_ttl_seconds,
                raise_on_error=True
            )
        except RedisServiceError as e:
            raise StoreUnavailableError(
                "Heartbeat could not be persisted",
                operation="persist_heartbeat",
                details={"session_id": session_id[:8], "original_error": str(e)}
            ) from e

    async def record_revocation(self, session_id: str, principal_id: str, revoked_at: datetime, reason: Optional[str]) -> None:
        payload = {
            "session_id": session_id,
            "principal_id": principal_id,
            "revoked_at": revoked_at.isoformat(),
            "reason": reason,
        }
        try:
            await self.redis.set(
                revoked_key(session_id),
                payload,
                ttl=self.key_ttl_seconds,
                raise_on_error=True
            )
        except RedisServiceError as e:
            raise StoreUnavailableError(
                "Session revocation could not be persisted",
                operation="revoke_session",
                details={"session_id": session_id[:8], "original_error": str(e)}
            ) from e
        # The heartbeat record no longer describes a live session
        await self.redis.delete(heartbeat_key(session_id))

    async def get_heartbeat(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.redis.get(heartbeat_key(session_id))

    async def is_revoked(self, session_id: str) -> bool:
        return await self.redis.exists(revoked_key(session_id)) > 0
