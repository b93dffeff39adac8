"""
Module resolution for kiln.

Maps an import reference and the file that issued it to a file on disk.
Component references are swapped for their compiled modules (compiling them
on first use), and imports issued from inside a compiled module are resolved
next to the component's original source rather than inside the output tree.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from kiln.build.caching import ComponentCache, PathRewriteTable
from kiln.build.config import COMPONENT_SUFFIX
from kiln.core.utils import file_exists

logger = logging.getLogger(__name__)

# Extensions tried by the third-party fallback for extensionless references
MODULE_EXTENSIONS = (".js", ".mjs")

# package.json fields naming a package's entry module, in priority order
PACKAGE_ENTRY_FIELDS = ("module", "jsnext:main", "main")


def _join(directory: Path, reference: str) -> Path:
    return Path(os.path.normpath(directory / reference))


class PathResolver:
    """Resolves import references for one build run."""

    def __init__(
        self,
        project_root: Path,
        table: PathRewriteTable,
        cache: ComponentCache,
        runtime_modules: Optional[dict[str, Path]] = None,
    ):
        self.project_root = project_root
        self.table = table
        self.cache = cache
        self.runtime_modules = dict(runtime_modules or {})

    def source_dir(self, importer: Path) -> Path:
        """Directory to resolve an importer's references against.

        A compiled module's imports are resolved against its component's
        source directory.
        """
        directory = importer.parent
        return self.table.source_dir_for(directory) or directory

    def search_project_module(self, reference: str) -> Optional[Path]:
        """Find an entry module relative to the project root."""
        base = _join(self.project_root, reference)
        for candidate in (base, base / "index", base / "index.js"):
            if file_exists(candidate):
                return candidate
        return None

    def resolve(self, reference: str, importer: Optional[Path] = None) -> Optional[Path]:
        """Return the absolute path reference points at, or None."""
        if importer is None:
            return self.search_project_module(reference)

        if reference in self.runtime_modules:
            return self.runtime_modules[reference]

        path = _join(self.source_dir(importer), reference)

        if path.suffix == COMPONENT_SUFFIX:
            output = self.cache.get_or_compile(path)
            logger.debug("component %s -> %s", path, output)
            return output

        compiled = self.table.get(path)
        if compiled is not None:
            return compiled

        return file_exists(path)


# =============================================================================
# Third-party Fallback
# =============================================================================


def _is_relative(reference: str) -> bool:
    return reference.startswith(("./", "../", "/")) or reference in (".", "..")


def _package_entry(package_dir: Path) -> Optional[Path]:
    manifest = package_dir / "package.json"
    entry = "index.js"
    if manifest.is_file():
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            data = {}
        for field_name in PACKAGE_ENTRY_FIELDS:
            value = data.get(field_name) if isinstance(data, dict) else None
            if isinstance(value, str) and value:
                entry = value
                break
    return _with_extensions(_join(package_dir, entry))


def _with_extensions(path: Path) -> Optional[Path]:
    if file_exists(path):
        return path
    for extension in MODULE_EXTENSIONS:
        candidate = path.with_name(path.name + extension)
        if file_exists(candidate):
            return candidate
    for extension in MODULE_EXTENSIONS:
        candidate = path / f"index{extension}"
        if file_exists(candidate):
            return candidate
    return None


def resolve_node_module(reference: str, base_dir: Path) -> Optional[Path]:
    """Resolve a reference the way Node-style bundlers do.

    Relative references get extension and index lookups. Bare references are
    searched in node_modules directories from base_dir up to the root.
    """
    if _is_relative(reference):
        return _with_extensions(_join(base_dir, reference))

    name_parts = reference.split("/")
    package_name_length = 2 if reference.startswith("@") else 1
    package_name = "/".join(name_parts[:package_name_length])
    subpath = "/".join(name_parts[package_name_length:])

    for directory in (base_dir, *base_dir.parents):
        package_dir = directory / "node_modules" / package_name
        if not package_dir.is_dir():
            continue
        if subpath:
            resolved = _with_extensions(_join(package_dir, subpath))
        else:
            resolved = _package_entry(package_dir)
        if resolved is not None:
            return resolved

    return None
