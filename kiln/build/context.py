"""
Per-run build state.

Everything one build run mutates lives on a BuildContext that is passed to
each phase explicitly; nothing is kept in module globals and the process
working directory is never changed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

from kiln.build.caching import ComponentCache, PathRewriteTable
from kiln.build.capabilities import Capabilities
from kiln.build.config import BuildConfig
from kiln.build.resolver import PathResolver
from kiln.core.errors import MapMergeError


@dataclass
class BuildContext:
    """State shared by the phases of one build run."""

    config: BuildConfig
    capabilities: Capabilities
    table: PathRewriteTable = field(default_factory=PathRewriteTable)

    def __post_init__(self) -> None:
        from kiln.build.phases import compile_component

        self._lock = threading.Lock()
        self.compiled: list[Path] = []
        self.map_warnings: list[MapMergeError] = []
        self.cache = ComponentCache(self.table, lambda path: compile_component(self, path))
        self.resolver = PathResolver(
            self.config.project_root,
            self.table,
            self.cache,
            self.capabilities.compiler.runtime_modules(self.config.project_root),
        )

    def record_compile(self, component: Path) -> None:
        with self._lock:
            self.compiled.append(component)

    def record_map_warning(self, error: MapMergeError) -> None:
        with self._lock:
            self.map_warnings.append(error)
