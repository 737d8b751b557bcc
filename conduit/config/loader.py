"""
Document loader for Conduit.

Reads YAML or JSON fragments and assembles them into one raw tree, then
validates it into a Document. Linking (cross-fragment references) is a
separate phase, see conduit.config.linker.

Fragment composition:
    imports: [tables.yaml, endpoints/]   merge whole fragments into this one
    - import: endpoints/create_team.yaml  replace this node by the file's content

Paths are relative to the file that mentions them. A directory import
loads every *.yaml, *.yml and *.json file in it, sorted by name. An inline
`import` node cannot carry any other key.

Merging: mappings merge key by key; lists of named items (`name` or
`label`) merge item by item on that key; any other list is concatenated;
scalars from later fragments win.

Usage:
    raw = load_tree(["app.yaml"])
    document = parse_document(raw)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from conduit.errors import ConfigValidationError

from .schemas import Document

logger = logging.getLogger(__name__)

FRAGMENT_SUFFIXES = (".yaml", ".yml", ".json")
IMPORTS_KEY = "imports"
INLINE_IMPORT_KEY = "import"


# =============================================================================
# Reading
# =============================================================================


def read_fragment(path: Path) -> Any:
    """Read one YAML/JSON file."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(f"Imported file not found: {path}") from e
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigValidationError(f"{path}: {e}") from e


def _expand(path: Path) -> list[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in FRAGMENT_SUFFIXES)
    return [path]


class _FragmentReader:
    def __init__(self) -> None:
        self._stack: list[Path] = []

    def load(self, path: Path) -> Any:
        path = path.resolve()
        if path in self._stack:
            cycle = " -> ".join(str(p) for p in [*self._stack, path])
            raise ConfigValidationError(f"Import cycle: {cycle}")
        self._stack.append(path)
        try:
            data = read_fragment(path)
            data = self._resolve_inline(data, path.parent)
            if isinstance(data, dict) and IMPORTS_KEY in data:
                data = dict(data)
                imports = data.pop(IMPORTS_KEY) or []
                if isinstance(imports, str):
                    imports = [imports]
                merged: Any = {}
                for name in imports:
                    for fragment in _expand(path.parent / name):
                        merged = merge(merged, self.load(fragment))
                data = merge(merged, data)
            logger.debug(f"Loaded fragment {path}")
            return data
        finally:
            self._stack.pop()

    def _resolve_inline(self, node: Any, base: Path) -> Any:
        if isinstance(node, dict):
            if INLINE_IMPORT_KEY in node:
                if len(node) > 1:
                    others = ", ".join(k for k in node if k != INLINE_IMPORT_KEY)
                    raise ConfigValidationError(
                        f"The import attribute cannot be combined with other keys: "
                        f"importing '{node[INLINE_IMPORT_KEY]}' alongside {others}"
                    )
                return self.load(base / str(node[INLINE_IMPORT_KEY]))
            return {k: self._resolve_inline(v, base) for k, v in node.items()}
        if isinstance(node, list):
            return [self._resolve_inline(v, base) for v in node]
        return node


# =============================================================================
# Merging
# =============================================================================


def _item_key(item: Any) -> str | None:
    if isinstance(item, dict):
        for key in ("name", "label"):
            if isinstance(item.get(key), str):
                return f"{key}:{item[key]}"
    return None


def merge(base: Any, other: Any) -> Any:
    """Deep-merge `other` into `base`, returning a new tree."""
    if isinstance(base, dict) and isinstance(other, dict):
        out = dict(base)
        for key, value in other.items():
            out[key] = merge(out[key], value) if key in out else value
        return out
    if isinstance(base, list) and isinstance(other, list):
        out = list(base)
        index = {k: i for i, item in enumerate(out) if (k := _item_key(item)) is not None}
        for item in other:
            key = _item_key(item)
            if key is not None and key in index:
                out[index[key]] = merge(out[index[key]], item)
            else:
                if key is not None:
                    index[key] = len(out)
                out.append(item)
        return out
    return other


def load_tree(paths: Iterable[str | Path]) -> dict[str, Any]:
    """
    Read and merge fragments into one raw tree.

    Raises:
        ConfigValidationError: Missing files, parse errors, import cycles
    """
    reader = _FragmentReader()
    tree: Any = {}
    for raw_path in paths:
        for path in _expand(Path(raw_path)):
            tree = merge(tree, reader.load(path))
    if not isinstance(tree, dict):
        raise ConfigValidationError("Document root must be a mapping")
    return tree


# =============================================================================
# Validation
# =============================================================================


def _format_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def parse_document(tree: dict[str, Any]) -> Document:
    """
    Validate a raw tree into a Document.

    Raises:
        ConfigValidationError: Listing every schema violation found
    """
    try:
        return Document.model_validate(tree)
    except ValidationError as e:
        logger.debug(f"Document validation failed: {e.error_count()} errors")
        raise ConfigValidationError([_format_error(err) for err in e.errors()]) from e


def load_document(paths: Iterable[str | Path]) -> Document:
    """Read, merge and validate fragments. Does not link."""
    return parse_document(load_tree(paths))
