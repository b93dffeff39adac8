"""
Build caching for kiln.

Staleness detection for compiled components, the per-run path rewrite
table, and the thread-safe get-or-compile cache built on top of them.
Nothing here is persisted: the artifacts on disk and their modification
times are the whole cache.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from kiln.build.config import BUILD_MODES, COMPONENT_SUFFIX, MODULE_SUFFIX

logger = logging.getLogger(__name__)


# =============================================================================
# Artifact Paths
# =============================================================================


def component_key(source: Path) -> Path:
    """Normalized table key for a component: absolute, with a .js suffix."""
    source = source.resolve()
    if source.suffix == COMPONENT_SUFFIX:
        return source.with_suffix(MODULE_SUFFIX)
    return source


def compute_component_output_path(
    output: Path,
    project_root: Path,
    component: Path,
    build_mode: str,
) -> Path:
    """Return where a component's compiled module lives.

    `<output>/<component path relative to project root, .html -> .js>.<mode>`.
    Components outside the project root keep their absolute path with the
    anchor stripped, so they still land inside the output tree.
    """
    if build_mode not in BUILD_MODES:
        raise ValueError(f"Unknown build mode: {build_mode}")

    component = component.resolve()
    try:
        relative = component.relative_to(project_root)
    except ValueError:
        relative = Path(*component.parts[1:])

    if relative.suffix == COMPONENT_SUFFIX:
        relative = relative.with_suffix(MODULE_SUFFIX)

    return output / relative.parent / f"{relative.name}.{build_mode}"


# =============================================================================
# Staleness Detection
# =============================================================================


@dataclass
class CompiledArtifact:
    """One compiled component output and the identity it was built for."""

    path: Path
    """Absolute path of the compiled module."""

    source: Path
    """Absolute path of the component source."""

    source_mtime_ns: int
    """Source modification time observed when the artifact was checked."""

    mode: str
    """Build mode the artifact was produced for ('debug' or 'prod')."""

    def is_fresh(self, build_mode: str) -> bool:
        """True if the artifact can be reused for a run in build_mode."""
        if self.mode != build_mode:
            return False
        try:
            artifact_mtime_ns = self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return False
        return artifact_mtime_ns >= self.source_mtime_ns


def mode_of_artifact(path: Path) -> Optional[str]:
    """Read the build-mode tag from a compiled artifact's suffix."""
    tag = path.suffix.lstrip(".")
    return tag if tag in BUILD_MODES else None


def load_artifact(source: Path, output_path: Path) -> CompiledArtifact:
    """Describe the artifact at output_path for a given component source."""
    return CompiledArtifact(
        path=output_path,
        source=source,
        source_mtime_ns=source.stat().st_mtime_ns,
        mode=mode_of_artifact(output_path) or "",
    )


# =============================================================================
# Path Rewrite Table
# =============================================================================


class PathRewriteTable:
    """Source path -> compiled artifact path, for the lifetime of one run.

    Keys are normalized with component_key. The table also remembers which
    source directory each compiled-output directory came from, so imports
    issued by a compiled module can be resolved next to its source.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Path, Path] = {}
        self._origins: dict[Path, Path] = {}

    def register(self, source: Path, output: Path) -> None:
        with self._lock:
            self._entries[component_key(source)] = output
            self._origins[output.parent] = source.resolve().parent

    def get(self, path: Path) -> Optional[Path]:
        with self._lock:
            return self._entries.get(component_key(path))

    def __contains__(self, path: object) -> bool:
        return isinstance(path, Path) and self.get(path) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def outputs(self) -> set[Path]:
        """Every compiled artifact path registered so far."""
        with self._lock:
            return set(self._entries.values())

    def is_output(self, path: Path) -> bool:
        return path in self.outputs()

    def source_dir_for(self, directory: Path) -> Optional[Path]:
        """Map a compiled-output directory back to its source directory."""
        with self._lock:
            return self._origins.get(directory)


# =============================================================================
# Component Cache
# =============================================================================


class ComponentCache:
    """Get-or-compile access to compiled components.

    One lock per normalized source path: two entry points that discover the
    same component at the same time produce a single compile, and the
    second caller receives the registered path.
    """

    def __init__(self, table: PathRewriteTable, compile_fn: Callable[[Path], Path]):
        self.table = table
        self._compile_fn = compile_fn
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}

    def _lock_for(self, key: Path) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get_or_compile(self, component: Path) -> Path:
        """Return the compiled path for component, compiling it if needed."""
        component = component.resolve()
        key = component_key(component)

        with self._lock_for(key):
            existing = self.table.get(key)
            if existing is not None:
                logger.debug("cache hit %s -> %s", component, existing)
                return existing

            output = self._compile_fn(component)
            self.table.register(component, output)
            return output
