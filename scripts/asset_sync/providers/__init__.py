"""
Asset hosts for the sync pipeline.
Handles the remote upload target and the offline debug and none targets.
"""

from .base import (
    AssetHost, HostRegistry, HostError, RateLimitedError,
    ConfigurationError, NetworkError, host_registry
)
from .local import DebugAssetHost, NoneAssetHost
from .open_cloud import OpenCloudAssetHost

# Register host classes with the global registry
host_registry.register_host_class("open-cloud", OpenCloudAssetHost)
host_registry.register_host_class("debug", DebugAssetHost)
host_registry.register_host_class("none", NoneAssetHost)

__all__ = [
    "AssetHost",
    "HostRegistry",
    "host_registry",

    # Exceptions
    "HostError",
    "RateLimitedError",
    "ConfigurationError",
    "NetworkError",

    # Concrete hosts
    "OpenCloudAssetHost",
    "DebugAssetHost",
    "NoneAssetHost",
]
