"""
Manifest of uploaded assets.

Tracks, per asset identity, the content fingerprint and remote id of the last
successful upload. The manifest is the only state carried between runs, so it
is written atomically and can be flushed after every upload.
"""

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Union

# Handle tomllib import for different Python versions
try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11 with tomli package
import tomli_w

from .packer import ImageSlice

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "asset-manifest.toml"
MANIFEST_HEADER = "# This file is @generated by asset-sync. It is not intended for manual editing.\n"


class ManifestCorruptError(Exception):
    """Raised when a persisted manifest cannot be read or has an invalid structure."""

    def __init__(self, path: Union[str, Path], reason: str):
        super().__init__(f"Manifest {path} is corrupt: {reason}")
        self.path = Path(path)
        self.reason = reason


@dataclass(frozen=True)
class ManifestEntry:
    """Last confirmed upload of one asset."""
    identity: str
    content_fingerprint: str
    remote_id: int
    packable: bool = False
    slice: Optional[ImageSlice] = None

    @property
    def is_packed(self) -> bool:
        return self.slice is not None

    def to_dict(self) -> Dict:
        data = {
            "content_fingerprint": self.content_fingerprint,
            "remote_id": self.remote_id,
        }
        if self.packable:
            data["packable"] = True
        if self.slice is not None:
            data["slice_offset"] = list(self.slice.offset)
            data["slice_size"] = list(self.slice.size)
        return data

    @classmethod
    def from_dict(cls, identity: str, data: Dict) -> "ManifestEntry":
        """Build an entry from its TOML table, raising ValueError on bad data."""
        if not isinstance(data, dict):
            raise ValueError(f"entry '{identity}' is not a table")

        fingerprint = data.get("content_fingerprint")
        remote_id = data.get("remote_id")
        if not isinstance(fingerprint, str) or not fingerprint:
            raise ValueError(f"entry '{identity}' has no content_fingerprint")
        if not isinstance(remote_id, int) or isinstance(remote_id, bool):
            raise ValueError(f"entry '{identity}' has no integer remote_id")

        packable = data.get("packable", False)
        if not isinstance(packable, bool):
            raise ValueError(f"entry '{identity}' has a non-boolean packable flag")

        image_slice = None
        if "slice_offset" in data or "slice_size" in data:
            offset = data.get("slice_offset")
            size = data.get("slice_size")
            if not (_is_int_pair(offset) and _is_int_pair(size)):
                raise ValueError(f"entry '{identity}' has a malformed slice")
            image_slice = ImageSlice(offset[0], offset[1], size[0], size[1])

        return cls(identity, fingerprint, remote_id, packable, image_slice)


def _is_int_pair(value) -> bool:
    return (isinstance(value, list) and len(value) == 2
            and all(isinstance(v, int) and not isinstance(v, bool) for v in value))


class Manifest:
    """Ordered mapping of asset identity to ManifestEntry."""

    def __init__(self, entries: Optional[Iterable[ManifestEntry]] = None):
        self._entries: Dict[str, ManifestEntry] = {}
        for entry in entries or []:
            self._entries[entry.identity] = entry

    def get(self, identity: str) -> Optional[ManifestEntry]:
        return self._entries.get(identity)

    def set(self, entry: ManifestEntry) -> None:
        self._entries[entry.identity] = entry

    def remove(self, identity: str) -> None:
        self._entries.pop(identity, None)

    def identities(self) -> list:
        return sorted(self._entries)

    def copy(self) -> "Manifest":
        return Manifest(self._entries.values())

    def __contains__(self, identity: str) -> bool:
        return identity in self._entries

    def __iter__(self) -> Iterator[ManifestEntry]:
        for identity in sorted(self._entries):
            yield self._entries[identity]

    def __len__(self) -> int:
        return len(self._entries)

    def to_toml(self) -> str:
        """Serialize with sorted identities so unchanged manifests write identical bytes."""
        data = {"assets": {entry.identity: entry.to_dict() for entry in self}}
        return MANIFEST_HEADER + tomli_w.dumps(data)

    @classmethod
    def from_toml(cls, text: str, path: Union[str, Path] = MANIFEST_FILENAME) -> "Manifest":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise ManifestCorruptError(path, str(e)) from e

        assets = data.get("assets", {})
        if not isinstance(assets, dict):
            raise ManifestCorruptError(path, "'assets' is not a table")

        try:
            entries = [ManifestEntry.from_dict(identity, entry) for identity, entry in assets.items()]
        except ValueError as e:
            raise ManifestCorruptError(path, str(e)) from e

        return cls(entries)


class ManifestStore:
    """
    Single writer of record for the manifest file.

    All mutation goes through this store under a re-entrant lock, so upload
    workers running in parallel can record results safely.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._manifest = Manifest()
        self._lock = threading.RLock()

    @property
    def manifest(self) -> Manifest:
        """A snapshot of the current manifest."""
        with self._lock:
            return self._manifest.copy()

    def load(self) -> Manifest:
        """
        Load the manifest from disk.

        Returns:
            The loaded manifest; empty if the file does not exist

        Raises:
            ManifestCorruptError: If the file exists but cannot be used
        """
        with self._lock:
            try:
                text = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                logger.info(f"No manifest at {self.path}, starting from an empty manifest")
                self._manifest = Manifest()
            except (OSError, UnicodeDecodeError) as e:
                raise ManifestCorruptError(self.path, str(e)) from e
            else:
                self._manifest = Manifest.from_toml(text, self.path)
                logger.info(f"Loaded manifest: {len(self._manifest)} assets")

            return self._manifest.copy()

    def get(self, identity: str) -> Optional[ManifestEntry]:
        with self._lock:
            return self._manifest.get(identity)

    def record(self, identity: str, fingerprint: str, remote_id: int,
               packable: bool = False, image_slice: Optional[ImageSlice] = None) -> ManifestEntry:
        """Insert or overwrite the entry for an identity."""
        entry = ManifestEntry(identity, fingerprint, remote_id, packable, image_slice)
        with self._lock:
            self._manifest.set(entry)
        logger.debug(f"Recorded {identity} -> {remote_id}")
        return entry

    def prune(self, active_identities: Iterable[str]) -> int:
        """Remove entries for identities that are no longer discovered."""
        active = set(active_identities)
        with self._lock:
            stale = [identity for identity in self._manifest.identities() if identity not in active]
            for identity in stale:
                self._manifest.remove(identity)
        if stale:
            logger.info(f"Pruned {len(stale)} stale manifest entries")
        return len(stale)

    @contextmanager
    def transaction(self):
        """Hold the store lock across several record calls and a flush."""
        with self._lock:
            yield self

    def flush(self) -> None:
        """Write the manifest atomically: temp file, fsync, then replace."""
        with self._lock:
            contents = self._manifest.to_toml()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = f"{self.path}.tmp.{os.getpid()}.{threading.get_ident()}"
            try:
                with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
                    f.write(contents)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            finally:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            logger.debug(f"Manifest flushed: {self.path} ({len(self._manifest)} entries)")
