# src/services/redis_service.py
"""
Redis Service for CaseVault.

Async-only wrapper around Redis with:
- Configuration from environment variables
- Automatic JSON serialization/deserialization
- TTL support
- Health checks

Unlike a cache, the session registry built on top of this service needs to
know when a write did not happen, so write operations can be asked to raise
``RedisServiceError`` instead of returning False.
"""
import os
import json
import redis.asyncio as redis
from typing import Optional, Dict, Any
from dataclasses import dataclass
import logging

from src.core.service_base import BaseService, ServiceConfig
from src.core.exceptions import RedisServiceError

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig(ServiceConfig):
    """Configuration for Redis Service"""
    url: Optional[str] = None
    decode_responses: bool = True
    socket_timeout: float = 5.0
    max_connections: int = 10
    retry_on_timeout: bool = True
    health_check_interval: int = 30


class RedisService(BaseService[RedisConfig]):
    """
    Async-only Redis service for durable session bookkeeping.
    """

    def __init__(self, config: Optional[RedisConfig] = None):
        """
        Initialize Redis Service.

        Args:
            config: Redis configuration. If not provided, uses environment variables.
        """
        self.logger = logging.getLogger(__name__)
        self._url_source = None

        if config is None:
            config = RedisConfig(url=self._get_redis_url())

        super().__init__(config, self.logger)

    def _get_redis_url(self) -> Optional[str]:
        """Get Redis URL from environment variables, first match wins"""
        for var in ("CASEVAULT_REDIS_URL", "REDIS_URL"):
            if url := os.environ.get(var):
                self._url_source = var
                self.logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def _validate_config(self) -> None:
        super()._validate_config()

        if not self.config.url:
            self.logger.warning(
                "No Redis URL found. Durable session registry will be disabled. "
                "Set CASEVAULT_REDIS_URL or REDIS_URL."
            )

    async def _initialize_client(self) -> Optional[redis.Redis]:
        """Initialize the Redis client"""
        if not self.config.url:
            return None

        try:
            client = redis.from_url(
                self.config.url,
                decode_responses=self.config.decode_responses,
                socket_timeout=self.config.socket_timeout,
                max_connections=self.config.max_connections,
                retry_on_timeout=self.config.retry_on_timeout,
                health_check_interval=self.config.health_check_interval
            )

            await client.ping()
            self.logger.info("Redis connection successful")
            return client

        except Exception as e:
            self.logger.error(f"Failed to connect to Redis: {e}")
            # Redis is optional, keep the service usable without it
            self.logger.warning("Redis functionality disabled due to connection error")
            return None

    def is_connected(self) -> bool:
        """Check if Redis is connected and available"""
        return self._client is not None

    async def get(
        self,
        key: str,
        default: Any = None,
        deserialize_json: bool = True
    ) -> Any:
        """
        Get a value from Redis.

        Args:
            key: The key to retrieve
            default: Default value if key doesn't exist
            deserialize_json: Whether to deserialize JSON strings

        Returns:
            The stored value or default
        """
        if not self._client:
            return default

        try:
            value = await self._client.get(key)

            if value is None:
                return default

            if deserialize_json and isinstance(value, str):
                try:
                    return json.loads(value)
                except json.JSONDecodeError:
                    pass

            return value

        except Exception as e:
            self.logger.warning(f"Redis get failed for key '{key}': {e}")
            return default

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        serialize_json: bool = True,
        raise_on_error: bool = False
    ) -> bool:
        """
        Set a value in Redis.

        Args:
            key: The key to set
            value: The value to store
            ttl: Time to live in seconds
            serialize_json: Whether to serialize non-string values as JSON
            raise_on_error: Raise RedisServiceError instead of returning False

        Returns:
            True if successful, False otherwise
        """
        if not self._client:
            if raise_on_error:
                raise RedisServiceError("Redis is not connected", key=key, operation="set")
            return False

        try:
            if serialize_json and not isinstance(value, (str, bytes)):
                value = json.dumps(value)

            if ttl:
                await self._client.setex(key, ttl, value)
            else:
                await self._client.set(key, value)

            return True

        except Exception as e:
            self.logger.error(f"Redis set failed for key '{key}': {e}")
            if raise_on_error:
                raise RedisServiceError(
                    "Redis set failed",
                    key=key,
                    operation="set",
                    details={'original_error': str(e)}
                ) from e
            return False

    async def delete(self, *keys: str) -> int:
        """
        Delete one or more keys.

        Returns:
            Number of keys deleted
        """
        if not self._client or not keys:
            return 0

        try:
            return await self._client.delete(*keys)
        except Exception as e:
            self.logger.error(f"Redis delete failed: {e}")
            return 0

    async def exists(self, *keys: str) -> int:
        """
        Check if keys exist.

        Returns:
            Number of keys that exist
        """
        if not self._client or not keys:
            return 0

        try:
            return await self._client.exists(*keys)
        except Exception as e:
            self.logger.warning(f"Redis exists check failed: {e}")
            return 0

    async def ttl(self, key: str) -> int:
        """
        Get time to live for a key.

        Returns:
            TTL in seconds, -1 if no TTL, -2 if key doesn't exist
        """
        if not self._client:
            return -2

        try:
            return await self._client.ttl(key)
        except Exception as e:
            self.logger.warning(f"Redis ttl failed for key '{key}': {e}")
            return -2

    async def health_check(self) -> Dict[str, Any]:
        """
        Check Redis service health.

        Returns:
            Health status including connection info
        """
        if not self.config.url:
            return {
                "healthy": True,  # Not unhealthy, just disabled
                "status": "disabled",
                "details": {
                    "message": "Redis not configured"
                }
            }

        try:
            if not self._client:
                return {
                    "healthy": False,
                    "status": "not_connected",
                    "details": {
                        "url_source": self._url_source,
                        "error": "Client not initialized"
                    }
                }

            await self._client.ping()
            info = await self._client.info()

            return {
                "healthy": True,
                "status": "connected",
                "details": {
                    "url_source": self._url_source,
                    "redis_version": info.get("redis_version", "unknown"),
                    "connected_clients": info.get("connected_clients", 0)
                }
            }

        except Exception as e:
            return {
                "healthy": False,
                "status": "error",
                "details": {
                    "url_source": self._url_source,
                    "error": str(e)
                }
            }

    async def _cleanup(self) -> None:
        """Clean up Redis connection"""
        if self._client:
            try:
                await self._client.close()
            except Exception as e:
                self.logger.warning(f"Error closing Redis client: {e}")


async def create_redis_service(
    url: Optional[str] = None,
    **kwargs
) -> RedisService:
    """
    Create and initialize a Redis service instance.

    Args:
        url: Redis URL (uses env vars if not provided)
        **kwargs: Additional config parameters

    Returns:
        Initialized RedisService
    """
    config = RedisConfig(url=url, **kwargs) if url else None
    service = RedisService(config)
    await service.initialize()
    return service
