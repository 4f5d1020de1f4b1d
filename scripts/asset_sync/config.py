"""
Configuration management for asset sync.
Supports TOML and JSON project files with nested project includes and
environment variable overrides.
"""

import os
import json
from dataclasses import dataclass, field

# Handle tomllib import for different Python versions
try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11 with tomli package
from typing import Dict, List, Optional, Any, Set, Union
from pathlib import Path, PurePosixPath

from .processing.codegen import CodegenKind
from .processing.manifest import MANIFEST_FILENAME
from .processing.packer import is_power_of_two

CONFIG_FILENAME = "asset-sync.toml"
ENV_PREFIX = "ASSET_SYNC_"
GLOB_PATTERN_CHARACTERS = "*?{}[]"
HOST_TYPES = ("open-cloud", "debug", "none")


class ConfigurationError(Exception):
    """Raised when a project configuration cannot be loaded or is inconsistent."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        if path is not None:
            message = f"{message} in {path}"
        super().__init__(message)
        self.path = Path(path) if path is not None else None


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept both kebab-case and snake_case keys."""
    return {key.replace('-', '_'): value for key, value in data.items()}


@dataclass
class InputConfig:
    """One group of input images selected by a glob."""
    glob: str
    codegen: Optional[str] = None
    codegen_path: Optional[str] = None
    packable: bool = False

    # Folder of the project file that declared this input
    base_dir: Path = field(default_factory=Path)

    @property
    def codegen_kind(self) -> Optional[CodegenKind]:
        return CodegenKind(self.codegen) if self.codegen else None

    @property
    def base_path(self) -> Path:
        """Folder named by the glob's leading components that contain no pattern."""
        prefix = []
        for part in PurePosixPath(self.glob).parts:
            if any(c in part for c in GLOB_PATTERN_CHARACTERS):
                break
            prefix.append(part)
        return self.base_dir.joinpath(*prefix)

    @property
    def resolved_codegen_path(self) -> Optional[Path]:
        if self.codegen_path is None:
            return None
        return self.base_dir / self.codegen_path

    @classmethod
    def _from_dict(cls, data: Dict[str, Any], base_dir: Path) -> "InputConfig":
        data = _normalize_keys(data)
        if 'glob' not in data:
            raise ConfigurationError("every input needs a glob")
        return cls(
            glob=data['glob'],
            codegen=data.get('codegen'),
            codegen_path=data.get('codegen_path'),
            packable=data.get('packable', False),
            base_dir=base_dir,
        )


@dataclass
class SpritesheetConfig:
    """Packing and page rendering settings."""
    padding: int = 1
    min_size: int = 128
    max_size: int = 1024
    alpha_bleed: bool = True
    compress_level: int = 6


@dataclass
class UploadConfig:
    """Retry budget, backoff curve and parallelism for uploads."""
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    parallelism: int = 4


@dataclass
class HostConfig:
    """Upload target and its host-specific options."""
    type: str = "none"
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncConfig:
    """Main configuration class for asset sync."""

    name: str = "asset-sync"
    manifest_path: str = MANIFEST_FILENAME

    spritesheet: SpritesheetConfig = field(default_factory=SpritesheetConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    host: HostConfig = field(default_factory=HostConfig)

    inputs: List[InputConfig] = field(default_factory=list)
    includes: List[str] = field(default_factory=list)

    # Folder of the root project file; identities and paths are relative to it
    project_dir: Path = field(default_factory=Path)

    @property
    def resolved_manifest_path(self) -> Path:
        return self.project_dir / self.manifest_path

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "SyncConfig":
        """
        Load configuration from a TOML or JSON file, or from the
        asset-sync.toml inside a folder, resolving includes.
        """
        return cls._load(Path(config_path), set())

    @classmethod
    def _load(cls, config_path: Path, seen: Set[Path]) -> "SyncConfig":
        if config_path.is_dir():
            config_path = config_path / CONFIG_FILENAME

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        resolved = config_path.resolve()
        if resolved in seen:
            raise ConfigurationError("include cycle detected", config_path)
        seen = seen | {resolved}

        if config_path.suffix.lower() == '.toml':
            data = cls._read_toml(config_path)
        elif config_path.suffix.lower() == '.json':
            data = cls._read_json(config_path)
        else:
            raise ValueError(f"Unsupported configuration format: {config_path.suffix}")

        config = cls._from_dict(data, config_path.parent)

        for include in config.includes:
            included = cls._load(config.project_dir / include, seen)
            config.inputs.extend(included.inputs)

        return config

    @staticmethod
    def _read_toml(config_path: Path) -> Dict[str, Any]:
        try:
            with open(config_path, 'rb') as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(str(e), config_path) from e

    @staticmethod
    def _read_json(config_path: Path) -> Dict[str, Any]:
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(str(e), config_path) from e

    @classmethod
    def _from_dict(cls, data: Dict[str, Any], project_dir: Path = Path(".")) -> "SyncConfig":
        """Create configuration from dictionary."""
        data = _normalize_keys(data)
        config_data: Dict[str, Any] = {'project_dir': project_dir}

        if 'name' in data:
            config_data['name'] = data['name']
        if 'manifest_path' in data:
            config_data['manifest_path'] = data['manifest_path']

        # Handle spritesheet settings
        if 'spritesheet' in data:
            sheet = _normalize_keys(data['spritesheet'])
            config_data['spritesheet'] = SpritesheetConfig(
                padding=sheet.get('padding', 1),
                min_size=sheet.get('min_size', 128),
                max_size=sheet.get('max_size', 1024),
                alpha_bleed=sheet.get('alpha_bleed', True),
                compress_level=sheet.get('compress_level', 6),
            )

        # Handle upload settings
        if 'upload' in data:
            upload = _normalize_keys(data['upload'])
            config_data['upload'] = UploadConfig(
                max_retries=upload.get('max_retries', 5),
                base_delay=upload.get('base_delay', 1.0),
                max_delay=upload.get('max_delay', 60.0),
                parallelism=upload.get('parallelism', 4),
            )

        # Handle host settings; everything besides the type is host-specific
        if 'host' in data:
            host = _normalize_keys(data['host'])
            config_data['host'] = HostConfig(
                type=host.pop('type', 'none'),
                options=host,
            )

        config_data['includes'] = list(data.get('includes', []))
        config_data['inputs'] = [
            InputConfig._from_dict(item, project_dir) for item in data.get('inputs', [])
        ]

        return cls(**config_data)

    @classmethod
    def default(cls) -> "SyncConfig":
        """Create default configuration with environment variable overrides."""
        config = cls()
        return cls._apply_env_overrides(config)

    @classmethod
    def _apply_env_overrides(cls, config: "SyncConfig") -> "SyncConfig":
        """Apply environment variable overrides to configuration."""

        if os.getenv('ASSET_SYNC_MANIFEST_PATH'):
            config.manifest_path = os.getenv('ASSET_SYNC_MANIFEST_PATH', MANIFEST_FILENAME)

        # Spritesheet settings
        if os.getenv('ASSET_SYNC_PADDING'):
            config.spritesheet.padding = _env_int('ASSET_SYNC_PADDING')

        if os.getenv('ASSET_SYNC_MIN_PAGE_SIZE'):
            config.spritesheet.min_size = _env_int('ASSET_SYNC_MIN_PAGE_SIZE')

        if os.getenv('ASSET_SYNC_MAX_PAGE_SIZE'):
            config.spritesheet.max_size = _env_int('ASSET_SYNC_MAX_PAGE_SIZE')

        if os.getenv('ASSET_SYNC_ALPHA_BLEED'):
            config.spritesheet.alpha_bleed = os.getenv('ASSET_SYNC_ALPHA_BLEED', 'true').lower() == 'true'

        # Upload settings
        if os.getenv('ASSET_SYNC_MAX_RETRIES'):
            config.upload.max_retries = _env_int('ASSET_SYNC_MAX_RETRIES')

        if os.getenv('ASSET_SYNC_BASE_DELAY'):
            config.upload.base_delay = _env_float('ASSET_SYNC_BASE_DELAY')

        if os.getenv('ASSET_SYNC_MAX_DELAY'):
            config.upload.max_delay = _env_float('ASSET_SYNC_MAX_DELAY')

        if os.getenv('ASSET_SYNC_PARALLELISM'):
            config.upload.parallelism = _env_int('ASSET_SYNC_PARALLELISM')

        # Host
        if os.getenv('ASSET_SYNC_HOST'):
            config.host.type = os.getenv('ASSET_SYNC_HOST', 'none')

        return config

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        sheet = self.spritesheet
        if sheet.padding < 0:
            errors.append("spritesheet.padding cannot be negative")
        if not is_power_of_two(sheet.min_size) or not is_power_of_two(sheet.max_size):
            errors.append("spritesheet.min_size and spritesheet.max_size must be powers of two")
        elif sheet.min_size > sheet.max_size:
            errors.append("spritesheet.min_size cannot exceed spritesheet.max_size")
        if not 0 <= sheet.compress_level <= 9:
            errors.append("spritesheet.compress_level must be between 0 and 9")

        upload = self.upload
        if upload.max_retries < 0:
            errors.append("upload.max_retries cannot be negative")
        if upload.base_delay < 0 or upload.max_delay < 0:
            errors.append("upload delays cannot be negative")
        if upload.parallelism < 1:
            errors.append("upload.parallelism must be at least 1")

        if self.host.type not in HOST_TYPES:
            errors.append(f"host.type must be one of {', '.join(HOST_TYPES)}")

        valid_kinds = [kind.value for kind in CodegenKind]
        for index, item in enumerate(self.inputs):
            if not item.glob:
                errors.append(f"inputs[{index}].glob cannot be empty")
            if item.codegen is not None and item.codegen not in valid_kinds:
                errors.append(f"inputs[{index}].codegen must be one of {', '.join(valid_kinds)}")
            if item.codegen_path is not None and item.codegen is None:
                errors.append(f"inputs[{index}].codegen_path requires codegen to be set")

        return errors


def _env_int(name: str) -> int:
    value = os.getenv(name, '')
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'") from e


def _env_float(name: str) -> float:
    value = os.getenv(name, '')
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got '{value}'") from e
