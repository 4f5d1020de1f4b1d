"""
Lua module generation for synced assets.

Each synced input resolves to either a bare remote id or a remote id plus the
rectangle it occupies on a spritesheet. Inputs configured for codegen get a
Lua module returning that value, either one module per image or one grouped
module per input group laid out as nested tables by folder.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Union

from jinja2 import Environment, FileSystemLoader

from .packer import ImageSlice

logger = logging.getLogger(__name__)

CODEGEN_HEADER = "-- This file was @generated by asset-sync. It is not intended for manual editing."

LUA_KEYWORDS = {
    "and", "break", "do", "else", "elseif", "end", "false", "for", "function", "goto", "if",
    "in", "local", "nil", "not", "or", "repeat", "return", "then", "true", "until", "while",
}
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class CodegenKind(Enum):
    """What a generated module returns for an asset."""
    ASSET_URL = "asset-url"
    URL_AND_SLICE = "url-and-slice"


@dataclass(frozen=True)
class UnpackedOutput:
    """An asset uploaded on its own."""
    remote_id: int


@dataclass(frozen=True)
class PackedOutput:
    """An asset living on an uploaded spritesheet page."""
    remote_id: int
    slice: ImageSlice


AssetOutput = Union[UnpackedOutput, PackedOutput]


@dataclass
class CodegenInput:
    """One synced input as seen by code generation."""
    identity: str
    path: Path
    group_relative_path: str
    kind: Optional[CodegenKind]
    output: Optional[AssetOutput]
    codegen_path: Optional[Path] = None


class CodegenError(Exception):
    """Raised when generated modules cannot be laid out or written."""


@dataclass(frozen=True)
class _Leaf:
    node: Dict[str, Any]


def asset_url(remote_id: int) -> str:
    return f"rbxassetid://{remote_id}"


def lua_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def lua_key(name: str) -> str:
    """Format a table key, bracketing names that are not plain identifiers."""
    if _IDENTIFIER.match(name) and name not in LUA_KEYWORDS:
        return name
    return f"[{lua_string(name)}]"


def output_node(kind: CodegenKind, output: AssetOutput) -> Dict[str, Any]:
    """Build the template node for one asset's value."""
    url = lua_string(asset_url(output.remote_id))
    if kind is CodegenKind.ASSET_URL:
        return {"raw": url}

    entries = [("Image", {"raw": url})]
    if isinstance(output, PackedOutput):
        x, y = output.slice.offset
        width, height = output.slice.size
        entries.append(("ImageRectOffset", {"raw": f"Vector2.new({x}, {y})"}))
        entries.append(("ImageRectSize", {"raw": f"Vector2.new({width}, {height})"}))
    return {"entries": entries}


class LuaCodegen:
    """Renders and writes Lua modules through Jinja2 templates."""

    def __init__(self, template_dir: Optional[str] = None, indent: str = "\t"):
        if template_dir is None:
            template_dir = Path(__file__).parent.parent / "templates"

        self.template_dir = Path(template_dir)
        self.indent = indent
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False
        )
        self.env.filters['lua_key'] = lua_key

    def render_module(self, root: Dict[str, Any]) -> str:
        template = self.env.get_template('module.lua.j2')
        return template.render(root=root, header=CODEGEN_HEADER, indent=self.indent)

    def render_asset(self, kind: CodegenKind, output: AssetOutput) -> str:
        return self.render_module(output_node(kind, output))

    def render_grouped(self, inputs: List[CodegenInput]) -> str:
        """
        Render one module holding every input as a nested table by folder.

        Raises:
            CodegenError: If a file and a folder map to the same key
        """
        tree: Dict[str, Any] = {}
        for item in inputs:
            if item.kind is None or item.output is None:
                continue

            parts = PurePosixPath(item.group_relative_path).parts
            folder = tree
            for segment in parts[:-1]:
                child = folder.setdefault(segment, {})
                if not isinstance(child, dict):
                    raise CodegenError(f"'{segment}' is both an image and a folder in {item.identity}")
                folder = child

            name = PurePosixPath(parts[-1]).stem
            if isinstance(folder.get(name), dict):
                raise CodegenError(f"'{name}' is both an image and a folder in {item.identity}")
            if name in folder:
                raise CodegenError(f"Two images map to the key '{name}' ({item.identity})")
            folder[name] = _Leaf(output_node(item.kind, item.output))

        return self.render_module(self._folder_node(tree))

    def _folder_node(self, folder: Dict[str, Any]) -> Dict[str, Any]:
        entries = []
        for name in sorted(folder):
            child = folder[name]
            if isinstance(child, _Leaf):
                entries.append((name, child.node))
            else:
                entries.append((name, self._folder_node(child)))
        return {"entries": entries}

    def write(self, inputs: List[CodegenInput]) -> List[Path]:
        """
        Write modules for every input that has codegen configured and an output.

        Inputs with a codegen_path are grouped into one module per path; the
        rest get a `<stem>.lua` module beside the image.

        Returns:
            Paths of the written modules
        """
        written: List[Path] = []
        grouped: Dict[Path, List[CodegenInput]] = {}

        for item in inputs:
            if item.kind is None:
                continue
            if item.codegen_path is not None:
                grouped.setdefault(item.codegen_path, []).append(item)
                continue
            if item.output is None:
                logger.debug(f"No output for {item.identity}, skipping codegen")
                continue

            path = item.path.with_suffix(".lua")
            self._write_file(path, self.render_asset(item.kind, item.output))
            written.append(path)

        for path in sorted(grouped):
            self._write_file(path, self.render_grouped(grouped[path]))
            written.append(path)

        logger.info(f"Generated {len(written)} Lua modules")
        return written

    def _write_file(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8", newline="\n")
        except OSError as e:
            raise CodegenError(f"Failed to write {path}: {e}") from e
