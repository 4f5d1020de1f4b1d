"""
Asset processing modules for packing, change detection, manifests, alpha bleeding,
spritesheet composition, uploads and Lua code generation.
"""

from .packer import (
    RectanglePacker, PackingConstraints, PackResult, InputRect, Placement, ImageSlice,
    PackingError, PackingInfeasibleError
)
from .changes import fingerprint, classify, ChangeDetector, ChangeKind, Classification
from .manifest import Manifest, ManifestEntry, ManifestStore, ManifestCorruptError
from .alpha_bleed import alpha_bleed
from .spritesheet import SpritesheetCompositor, ImageUtils
from .uploader import (
    UploadOrchestrator, UploadJob, UploadReport, JobStatus, BackoffPolicy, ManifestUpdate
)
from .codegen import LuaCodegen, CodegenKind, PackedOutput, UnpackedOutput

__all__ = [
    "RectanglePacker",
    "PackingConstraints",
    "PackResult",
    "InputRect",
    "Placement",
    "ImageSlice",
    "PackingError",
    "PackingInfeasibleError",
    "fingerprint",
    "classify",
    "ChangeDetector",
    "ChangeKind",
    "Classification",
    "Manifest",
    "ManifestEntry",
    "ManifestStore",
    "ManifestCorruptError",
    "alpha_bleed",
    "SpritesheetCompositor",
    "ImageUtils",
    "UploadOrchestrator",
    "UploadJob",
    "UploadReport",
    "JobStatus",
    "BackoffPolicy",
    "ManifestUpdate",
    "LuaCodegen",
    "CodegenKind",
    "PackedOutput",
    "UnpackedOutput",
]
