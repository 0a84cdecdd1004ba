# src/core/service_base.py
"""
Base service class for standardized service implementation in CaseVault.

All infrastructure services inherit from BaseService to ensure consistent:
- Initialization patterns
- Error handling
- Health checks
- Resource cleanup
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
import logging
from src.core.exceptions import ServiceError, ConfigurationError

# Type variable for service configuration
ConfigType = TypeVar('ConfigType')


class ServiceConfig:
    """Base configuration class for services"""
    pass


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base class for all CaseVault services.

    Provides:
    - Lazy initialization pattern
    - Consistent error handling
    - Health check interface
    - Resource management
    """

    def __init__(
        self,
        config: Optional[ConfigType] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the service.

        Args:
            config: Service-specific configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._client = None

        self.service_name = self.__class__.__name__

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Initialize the underlying client/connection.

        Returns:
            The initialized client

        Raises:
            ConfigurationError: If configuration is invalid
            ServiceError: If initialization fails
        """
        pass

    async def initialize(self) -> None:
        """
        Initialize the service (lazy loading pattern).

        This method is idempotent - multiple calls are safe.
        """
        if self._initialized:
            self.logger.debug(f"{self.service_name} already initialized")
            return

        try:
            self.logger.info(f"Initializing {self.service_name}...")

            self._validate_config()
            self._client = await self._initialize_client()
            self._initialized = True

            self.logger.info(f"{self.service_name} initialized successfully")

        except ConfigurationError:
            raise
        except Exception as e:
            error_msg = f"Failed to initialize {self.service_name}"
            self.logger.error(error_msg, exc_info=True)
            raise ServiceError(
                service_name=self.service_name,
                message=error_msg,
                details={'original_error': str(e), 'error_type': type(e).__name__}
            )

    def _validate_config(self) -> None:
        """
        Validate service configuration.

        Override this method to add service-specific validation.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.config is None:
            self.logger.debug(f"No configuration provided for {self.service_name}")

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the service.

        Returns:
            Dict containing:
            - healthy: bool indicating if service is healthy
            - status: string status message
            - details: optional additional information
        """
        pass

    async def ensure_initialized(self) -> None:
        """Ensure the service is initialized before use."""
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        """Check if the service is initialized"""
        return self._initialized

    async def shutdown(self) -> None:
        """
        Gracefully shutdown the service and cleanup resources.

        Override ``_cleanup`` to add service-specific cleanup.
        """
        if not self._initialized:
            return

        try:
            self.logger.info(f"Shutting down {self.service_name}...")
            await self._cleanup()
            self._client = None
            self._initialized = False
            self.logger.info(f"{self.service_name} shut down successfully")

        except Exception:
            # Shutdown stays best effort
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)

    async def _cleanup(self) -> None:
        """Service-specific cleanup logic."""
        pass

    def get_metrics(self) -> Dict[str, Any]:
        """Get service metrics for monitoring."""
        return {
            "service_name": self.service_name,
            "initialized": self._initialized,
        }
