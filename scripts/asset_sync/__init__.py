"""
Asset Sync

Incremental image asset pipeline for game projects: packs changed images into
spritesheets, uploads them to a remote asset host with rate-limit aware
retries, records results in a manifest and generates Lua modules that
reference the uploaded assets.
"""

__version__ = "0.1.0"
__author__ = "Asset Sync Development Team"

from .config import SyncConfig
from .pipeline import SyncPipeline, SyncResult
from .providers.base import AssetHost
from .processing.packer import RectanglePacker, PackingConstraints
from .processing.manifest import ManifestStore
from .processing.uploader import UploadOrchestrator

__all__ = [
    "SyncConfig",
    "SyncPipeline",
    "SyncResult",
    "AssetHost",
    "RectanglePacker",
    "PackingConstraints",
    "ManifestStore",
    "UploadOrchestrator",
]
