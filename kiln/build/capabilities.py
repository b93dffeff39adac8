"""
Collaborator contracts for the build pipeline.

The orchestrator never compiles, lints, transpiles, minifies or bundles by
itself: it drives pluggable capabilities through the narrow protocols
below, grouped into a Capabilities bundle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence, runtime_checkable

from kiln.build.sourcemap import SourceMap

if TYPE_CHECKING:
    from kiln.build.stages import Stage


# =============================================================================
# Data Containers
# =============================================================================


@dataclass
class CompileOptions:
    """Options handed to the component compiler."""

    filename: str
    """Path of the component, as shown in compiler messages."""

    name: str
    """Module name derived from the component file name."""

    dev: bool = False
    """Development mode: runtime warnings, no dead-code stripping."""

    format: str = "es"
    """Module format of the generated code."""

    shared: bool = True
    """Import helpers from the shared runtime instead of inlining them."""


@dataclass
class CompileResult:
    """Output of compiling one component."""

    code: str
    map: Optional[SourceMap] = None


@dataclass
class TransformResult:
    """Code produced by a transform, with the map back to its input."""

    code: str
    map: Optional[SourceMap] = None


@dataclass
class LintFinding:
    """One lint message."""

    path: str
    line: int
    column: int
    severity: str
    """'error' or 'warning'."""

    message: str
    rule: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == "error"


@dataclass
class BundleResult:
    """A written bundle."""

    path: Path
    modules: list[Path] = field(default_factory=list)
    """Every module included, in execution order."""

    map: Optional[SourceMap] = None


# =============================================================================
# Protocols (Interfaces)
# =============================================================================


@runtime_checkable
class ComponentCompiler(Protocol):
    """Turns one component source into one JavaScript module."""

    def compile(self, source: str, options: CompileOptions) -> CompileResult:
        """Compile component text.

        Raises:
            CompileError: If the component is invalid.
        """
        ...

    def runtime_modules(self, project_root: Path) -> dict[str, Path]:
        """Import ids of the shared runtime mapped to files on disk."""
        ...


@runtime_checkable
class Linter(Protocol):
    """Checks project source text."""

    def lint(self, source: str, filename: str) -> list[LintFinding]:
        ...


@runtime_checkable
class Transpiler(Protocol):
    """Down-levels modern syntax in a single module."""

    def transform(self, code: str, filename: str, options: dict[str, Any]) -> TransformResult:
        ...


@runtime_checkable
class Minifier(Protocol):
    """Minifies a complete bundle."""

    def minify(self, code: str) -> TransformResult:
        """Return minified code and a map from it back to the input code."""
        ...


@runtime_checkable
class Bundler(Protocol):
    """Bundles an entry module and everything it imports."""

    def bundle(self, entry: str, stages: Sequence["Stage"], output: Path) -> BundleResult:
        """Write a self-executing bundle with an inline map to output.

        Raises:
            BundleError: If a module cannot be resolved or loaded.
        """
        ...


@runtime_checkable
class MapFlattener(Protocol):
    """Collapses the map chain of a generated file into a single map."""

    def flatten(self, path: Path) -> Any:
        """Rewrite path in place with a flattened map.

        Raises:
            MapMergeError: If the chain cannot be read or traced.
        """
        ...


@dataclass
class Capabilities:
    """The collaborators one build run uses."""

    compiler: ComponentCompiler
    bundler: Bundler
    flattener: MapFlattener
    linter: Optional[Linter] = None
    transpiler: Optional[Transpiler] = None
    minifier: Optional[Minifier] = None


def default_capabilities(project_root: Optional[Path] = None) -> Capabilities:
    """Capabilities backed by the pure-Python bundler and Node.js tools.

    The Node.js tools are looked up in project_root's node_modules.
    """
    from kiln.build.adapters import BubleTranspiler, EslintLinter, SvelteCompiler, UglifyMinifier
    from kiln.build.bundler import ModuleGraphBundler
    from kiln.build.sourcemap import SourceMapFlattener

    return Capabilities(
        compiler=SvelteCompiler(cwd=project_root),
        bundler=ModuleGraphBundler(),
        flattener=SourceMapFlattener(),
        linter=EslintLinter(cwd=project_root),
        transpiler=BubleTranspiler(cwd=project_root),
        minifier=UglifyMinifier(cwd=project_root),
    )
