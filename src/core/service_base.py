# src/core/service_base.py
"""
Base class for services that wrap an external client.

Subclasses supply the client factory and a health check; the base class
handles lazy initialization, config validation and shutdown.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
import logging

from src.core.exceptions import ServiceError, ConfigurationError

ConfigType = TypeVar('ConfigType')


class ServiceConfig:
    """Base configuration class for services"""
    pass


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base class for external-client services.

    The client is created on first use, so constructing a service never
    touches the network or fails on missing credentials.
    """

    def __init__(
        self,
        config: Optional[ConfigType] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._client = None

        self.service_name = self.__class__.__name__

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Create the underlying client.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        pass

    async def initialize(self) -> None:
        """Initialize the service. Idempotent."""
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
                operation="initialize",
                message=error_msg,
                details={'original_error': str(e), 'error_type': type(e).__name__}
            ) from e

    def _validate_config(self) -> None:
        """
        Validate service configuration. Override for service-specific checks.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.config is None:
            raise ConfigurationError(
                component=self.service_name,
                message=f"No configuration provided for {self.service_name}"
            )

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Check the service.

        Returns:
            Dict with "healthy" (bool), "status" (str) and optional "details"
        """
        pass

    async def ensure_initialized(self) -> None:
        """Initialize on first use"""
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> Any:
        """
        The underlying client.

        Raises:
            ServiceError: If service is not initialized
        """
        if not self._initialized or self._client is None:
            raise ServiceError(
                service_name=self.service_name,
                message=f"{self.service_name} is not initialized. Call initialize() first."
            )
        return self._client

    async def shutdown(self) -> None:
        """Release the client. Errors are logged, not raised."""
        if not self._initialized:
            return

        try:
            self.logger.info(f"Shutting down {self.service_name}...")
            await self._cleanup()
            self.logger.info(f"{self.service_name} shut down successfully")
        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
        finally:
            self._client = None
            self._initialized = False

    async def _cleanup(self) -> None:
        """Service-specific cleanup. Override where the client holds resources."""
        pass

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "initialized": self._initialized,
        }
