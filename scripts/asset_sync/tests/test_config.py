"""
Tests for project configuration loading, includes and environment overrides.
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from asset_sync.config import ConfigurationError, InputConfig, SyncConfig
from asset_sync.processing.codegen import CodegenKind


PROJECT_TOML = """
name = "demo"
manifest-path = "build/manifest.toml"
includes = ["packages/ui"]

[spritesheet]
padding = 2
min-size = 64
max-size = 512
alpha-bleed = false

[upload]
max-retries = 3
base-delay = 0.5
parallelism = 2

[host]
type = "open-cloud"
api-key = "secret"
user-id = 42

[[inputs]]
glob = "assets/sprites/**/*.png"
codegen = "url-and-slice"
codegen-path = "src/Sprites.lua"
packable = true

[[inputs]]
glob = "assets/logo.png"
codegen = "asset-url"
"""

UI_TOML = """
[[inputs]]
glob = "icons/*.png"
packable = true
"""


class TestSyncConfig(unittest.TestCase):
    """Test loading configuration files."""

    def setUp(self):
        """Set up a temporary project folder."""
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        """Clean up temporary files."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write(self, relative, text):
        path = self.temp_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_toml_with_kebab_keys(self):
        self.write("packages/ui/asset-sync.toml", UI_TOML)
        path = self.write("asset-sync.toml", PROJECT_TOML)

        config = SyncConfig.from_file(path)

        self.assertEqual(config.name, "demo")
        self.assertEqual(config.resolved_manifest_path, self.temp_dir / "build" / "manifest.toml")
        self.assertEqual(config.spritesheet.padding, 2)
        self.assertEqual(config.spritesheet.min_size, 64)
        self.assertFalse(config.spritesheet.alpha_bleed)
        self.assertEqual(config.upload.max_retries, 3)
        self.assertEqual(config.upload.base_delay, 0.5)
        self.assertEqual(config.upload.max_delay, 60.0)
        self.assertEqual(config.host.type, "open-cloud")
        self.assertEqual(config.host.options, {"api_key": "secret", "user_id": 42})
        self.assertEqual(config.validate(), [])

    def test_inputs_and_includes(self):
        self.write("packages/ui/asset-sync.toml", UI_TOML)

        config = SyncConfig.from_file(self.write("asset-sync.toml", PROJECT_TOML))

        self.assertEqual(len(config.inputs), 3)
        sprites, logo, icons = config.inputs
        self.assertTrue(sprites.packable)
        self.assertEqual(sprites.codegen_kind, CodegenKind.URL_AND_SLICE)
        self.assertEqual(sprites.resolved_codegen_path, self.temp_dir / "src" / "Sprites.lua")
        self.assertEqual(logo.codegen_kind, CodegenKind.ASSET_URL)
        self.assertIsNone(logo.resolved_codegen_path)
        self.assertEqual(icons.base_dir, self.temp_dir / "packages" / "ui")
        self.assertEqual(icons.base_path, self.temp_dir / "packages" / "ui" / "icons")

    def test_load_from_folder(self):
        self.write("asset-sync.toml", 'name = "folder"\n')

        config = SyncConfig.from_file(self.temp_dir)

        self.assertEqual(config.name, "folder")
        self.assertEqual(config.project_dir, self.temp_dir)

    def test_include_cycle_detected(self):
        self.write("a/asset-sync.toml", 'includes = ["../b"]\n')
        self.write("b/asset-sync.toml", 'includes = ["../a"]\n')

        with self.assertRaises(ConfigurationError):
            SyncConfig.from_file(self.temp_dir / "a")

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            SyncConfig.from_file(self.temp_dir / "nope.toml")

    def test_invalid_toml(self):
        path = self.write("asset-sync.toml", "name = \n")

        with self.assertRaises(ConfigurationError):
            SyncConfig.from_file(path)

    def test_input_without_glob(self):
        path = self.write("asset-sync.toml", "[[inputs]]\npackable = true\n")

        with self.assertRaises(ConfigurationError):
            SyncConfig.from_file(path)

    def test_load_json(self):
        path = self.temp_dir / "asset-sync.json"
        path.write_text(json.dumps({
            "name": "json-project",
            "spritesheet": {"padding": 0},
            "inputs": [{"glob": "*.png", "packable": True}],
        }), encoding="utf-8")

        config = SyncConfig.from_file(path)

        self.assertEqual(config.name, "json-project")
        self.assertEqual(config.spritesheet.padding, 0)
        self.assertEqual(config.inputs[0].base_path, self.temp_dir)

    def test_unsupported_format(self):
        path = self.write("asset-sync.yaml", "name: x\n")

        with self.assertRaises(ValueError):
            SyncConfig.from_file(path)


class TestEnvironmentOverrides(unittest.TestCase):
    """Test ASSET_SYNC_* overrides."""

    def test_overrides_applied(self):
        env = {
            "ASSET_SYNC_PADDING": "4",
            "ASSET_SYNC_ALPHA_BLEED": "false",
            "ASSET_SYNC_MAX_RETRIES": "9",
            "ASSET_SYNC_BASE_DELAY": "0.25",
            "ASSET_SYNC_PARALLELISM": "8",
            "ASSET_SYNC_HOST": "debug",
        }
        with patch.dict("os.environ", env):
            config = SyncConfig.default()

        self.assertEqual(config.spritesheet.padding, 4)
        self.assertFalse(config.spritesheet.alpha_bleed)
        self.assertEqual(config.upload.max_retries, 9)
        self.assertEqual(config.upload.base_delay, 0.25)
        self.assertEqual(config.upload.parallelism, 8)
        self.assertEqual(config.host.type, "debug")

    def test_bad_number_rejected(self):
        with patch.dict("os.environ", {"ASSET_SYNC_PADDING": "wide"}):
            with self.assertRaises(ConfigurationError):
                SyncConfig.default()


class TestValidation(unittest.TestCase):
    """Test configuration validation messages."""

    def test_defaults_are_valid(self):
        self.assertEqual(SyncConfig().validate(), [])

    def test_invalid_values_reported(self):
        config = SyncConfig()
        config.spritesheet.min_size = 100
        config.upload.parallelism = 0
        config.host.type = "ftp"
        config.inputs.append(InputConfig(glob="*.png", codegen="everything"))
        config.inputs.append(InputConfig(glob="*.jpg", codegen_path="out.lua"))

        errors = config.validate()

        self.assertEqual(len(errors), 5)
        self.assertTrue(any("powers of two" in error for error in errors))
        self.assertTrue(any("parallelism" in error for error in errors))
        self.assertTrue(any("host.type" in error for error in errors))
        self.assertTrue(any("inputs[0].codegen" in error for error in errors))
        self.assertTrue(any("inputs[1].codegen_path" in error for error in errors))

    def test_min_size_above_max(self):
        config = SyncConfig()
        config.spritesheet.min_size = 2048

        self.assertEqual(len(config.validate()), 1)


class TestInputConfig(unittest.TestCase):
    """Test glob base paths."""

    def test_base_path_stops_at_first_pattern(self):
        item = InputConfig(glob="assets/ui/*/icons/*.png", base_dir=Path("/project"))

        self.assertEqual(item.base_path, Path("/project/assets/ui"))

    def test_literal_glob_base_path_is_file(self):
        item = InputConfig(glob="assets/logo.png", base_dir=Path("/project"))

        self.assertEqual(item.base_path, Path("/project/assets/logo.png"))
