"""
Content fingerprints and change detection against the manifest.
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .manifest import Manifest


def fingerprint(data: bytes) -> str:
    """Return the SHA-256 hex digest of an asset's raw bytes."""
    return hashlib.sha256(data).hexdigest()


class ChangeKind(Enum):
    """Classification of a discovered input relative to the manifest."""
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    NEW = "new"


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one input."""
    identity: str
    kind: ChangeKind
    new_fingerprint: str
    old_fingerprint: Optional[str] = None

    @property
    def needs_upload(self) -> bool:
        return self.kind is not ChangeKind.UNCHANGED


def classify(identity: str, data: bytes, manifest: Manifest) -> Classification:
    """
    Compare an input's bytes with the manifest entry for its identity.

    Args:
        identity: Asset identity used as the manifest key
        data: Raw asset bytes
        manifest: Manifest as of the start of the run

    Returns:
        NEW if the identity is unknown, UNCHANGED if the fingerprint matches,
        CHANGED otherwise
    """
    new_fp = fingerprint(data)
    entry = manifest.get(identity)
    if entry is None:
        return Classification(identity, ChangeKind.NEW, new_fp)
    if entry.content_fingerprint == new_fp:
        return Classification(identity, ChangeKind.UNCHANGED, new_fp, entry.content_fingerprint)
    return Classification(identity, ChangeKind.CHANGED, new_fp, entry.content_fingerprint)


class ChangeDetector:
    """Classifies inputs against a fixed snapshot of the manifest."""

    def __init__(self, manifest: Manifest):
        self.manifest = manifest

    def classify(self, identity: str, data: bytes) -> Classification:
        return classify(identity, data, self.manifest)

    def classify_input(self, identity: str, data: bytes, packable: bool) -> Classification:
        """
        Classify an input, also treating a change of its packable setting as a change.

        An asset uploaded while packable must be re-uploaded on its own once it
        is no longer packable, and vice versa, even if its bytes are identical.
        """
        result = self.classify(identity, data)
        if result.kind is ChangeKind.UNCHANGED:
            entry = self.manifest.get(identity)
            if entry is not None and entry.packable != packable:
                return Classification(identity, ChangeKind.CHANGED,
                                      result.new_fingerprint, result.old_fingerprint)
        return result
