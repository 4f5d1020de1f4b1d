"""
Asset hosts that never touch the network.

DebugAssetHost writes uploads into a local folder and hands out sequential ids,
which makes it possible to exercise a whole sync offline. NoneAssetHost refuses
every upload, for projects that only want packing and codegen checked.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List

from .base import AssetHost, ConfigurationError, HostError

logger = logging.getLogger(__name__)


class DebugAssetHost(AssetHost):
    """Stores uploads as files named after their assigned id."""

    name = "debug"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.output_dir = Path(".asset-sync-debug")
        self._lock = threading.Lock()
        self._next_id = 1

    def configure(self, config: Dict[str, Any]) -> None:
        errors = self.validate_config(config)
        if errors:
            raise ConfigurationError("; ".join(errors), self.name)

        self.output_dir = Path(config.get("output_dir", self.output_dir))
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create {self.output_dir}: {e}", self.name) from e

        # Continue numbering after files left by earlier runs
        existing = [int(p.name) for p in self.output_dir.iterdir() if p.name.isdigit()]
        self._next_id = max(existing, default=0) + 1
        self._configured = True

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        errors = []
        output_dir = config.get("output_dir")
        if output_dir is not None and not isinstance(output_dir, str):
            errors.append("output_dir must be a string")
        return errors

    def upload(self, data: bytes, display_name: str) -> int:
        with self._lock:
            asset_id = self._next_id
            self._next_id += 1

        path = self.output_dir / str(asset_id)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise HostError(f"Failed to write {path}: {e}", self.name) from e

        logger.debug(f"Debug upload '{display_name}' -> {path}")
        return asset_id


class NoneAssetHost(AssetHost):
    """A host that rejects every upload."""

    name = "none"

    def configure(self, config: Dict[str, Any]) -> None:
        self._configured = True

    def upload(self, data: bytes, display_name: str) -> int:
        raise HostError(
            f"Cannot upload '{display_name}': no asset host is configured", self.name
        )
