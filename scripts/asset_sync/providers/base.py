"""
Abstract base classes for asset hosts.
Defines the interface that every upload target must implement.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class AssetHost(ABC):
    """Abstract base class for remote asset hosts."""

    name = "host"

    def __init__(self, config: Dict[str, Any]):
        """Initialize host with configuration."""
        self.config = config
        self._configured = False

    @abstractmethod
    def upload(self, data: bytes, display_name: str) -> int:
        """
        Upload one image and return its remote asset id.

        Args:
            data: Encoded image bytes (PNG)
            display_name: Human-readable name shown by the host

        Returns:
            Remote asset id assigned by the host

        Raises:
            RateLimitedError: If the host asked us to slow down
            HostError: For any other failure
        """
        pass

    @abstractmethod
    def configure(self, config: Dict[str, Any]) -> None:
        """
        Configure host with settings.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        pass

    def is_configured(self) -> bool:
        """Check if host is properly configured."""
        return self._configured

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """Return a list of validation error messages (empty if valid)."""
        return []

    def get_host_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "class": self.__class__.__name__,
            "configured": self.is_configured(),
        }


class HostError(Exception):
    """Base exception for asset host errors."""

    def __init__(self, message: str, host: str, recoverable: bool = False):
        super().__init__(message)
        self.host = host
        self.recoverable = recoverable


class RateLimitedError(HostError):
    """Raised when the host rejects a request with HTTP 429."""

    def __init__(self, host: str, retry_after: Optional[float] = None):
        message = "Rate limited"
        if retry_after is not None:
            message += f", retry after {retry_after:g}s"
        super().__init__(message, host, recoverable=True)
        self.retry_after = retry_after


class ConfigurationError(HostError):
    """Raised when host configuration is invalid."""

    def __init__(self, message: str, host: str):
        super().__init__(f"Configuration error: {message}", host, recoverable=False)


class NetworkError(HostError):
    """Raised for transport-level failures talking to the host."""

    def __init__(self, message: str, host: str):
        super().__init__(f"Network error: {message}", host, recoverable=False)


class HostRegistry:
    """Registry of asset host classes by name."""

    def __init__(self):
        self._host_classes: Dict[str, type] = {}

    def register_host_class(self, name: str, host_class: type) -> None:
        """
        Register a host class.

        Raises:
            ValueError: If host_class doesn't inherit from AssetHost
        """
        if not issubclass(host_class, AssetHost):
            raise ValueError(f"Host class {host_class} must inherit from AssetHost")

        self._host_classes[name] = host_class

    def create_host(self, name: str, config: Dict[str, Any]) -> AssetHost:
        """
        Create and configure a host instance.

        Args:
            name: Name the host class was registered under
            config: Configuration for the host

        Returns:
            Configured host instance

        Raises:
            ValueError: If host name is not registered
            ConfigurationError: If host configuration fails
        """
        if name not in self._host_classes:
            raise ValueError(f"Host '{name}' not registered. Available: {list(self._host_classes.keys())}")

        host = self._host_classes[name](config)

        try:
            host.configure(config)
        except ConfigurationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Failed to configure host '{name}': {e}", name) from e

        return host

    def list_available_host_classes(self) -> List[str]:
        return list(self._host_classes.keys())


# Global host registry instance
host_registry = HostRegistry()
