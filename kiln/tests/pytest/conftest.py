"""
Shared pytest fixtures for kiln tests.

Provides in-process stand-ins for the Node.js tools (compiler, linter,
transpiler, minifier) and helpers that lay out small projects in tmp_path.
The real ModuleGraphBundler and SourceMapFlattener are used throughout.

Test Tier Markers:
  @pytest.mark.evergreen - Tests that always run, never skip (production tests)
  @pytest.mark.dev       - Development/WIP tests, toggle-able
"""

from __future__ import annotations

import json
import re
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from kiln.build.bundler import ModuleGraphBundler
from kiln.build.capabilities import (
    Capabilities,
    CompileOptions,
    CompileResult,
    LintFinding,
    TransformResult,
)
from kiln.build.config import BuildConfig, parse_config
from kiln.build.sourcemap import SourceMap, SourceMapFlattener, load_map_reference, split_source_map_comment
from kiln.core.errors import CompileError
from kiln.core.utils import log


# =============================================================================
# Test Data Constants
# =============================================================================

SCRIPT_BLOCK = re.compile(r"<script>\n?(.*?)</script>", re.DOTALL)

MINIFIED_BANNER = "/*! minified */"

# A two-component project: index.js -> App.html -> Nested.html, plus util.js
BASIC_PROJECT: dict[str, str] = {
    "src/index.js": (
        "import App from './App.html';\n"
        "import { greet } from './util.js';\n"
        "var app = new App();\n"
        "greet(app);\n"
    ),
    "src/util.js": (
        "export function greet(target) {\n"
        "  return 'hello ' + target;\n"
        "}\n"
    ),
    "src/App.html": (
        "<h1>Hello</h1>\n"
        "<script>\n"
        "import Nested from './Nested.html';\n"
        "export default function App() {\n"
        "  this.nested = new Nested();\n"
        "}\n"
        "</script>\n"
    ),
    "src/Nested.html": (
        "<p>nested</p>\n"
        "<script>\n"
        "export default function Nested() {}\n"
        "</script>\n"
    ),
}


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test tiers."""
    config.addinivalue_line(
        "markers",
        "evergreen: tests that always run, never skip (production tests)"
    )
    config.addinivalue_line(
        "markers",
        "dev: development/WIP tests, toggle-able for active development"
    )


@pytest.fixture(autouse=True)
def plain_output() -> None:
    """Keep log output free of color codes so assertions can match text."""
    log.set_color(False)


# =============================================================================
# Tool Stand-ins
# =============================================================================


class FakeCompiler:
    """Compiles a component to the contents of its <script> block.

    The map is an identity map shifted to the line the script starts on.
    A component containing COMPILE_FAIL is rejected.
    """

    def __init__(self, delay: float = 0.0, runtime: Optional[dict[str, Path]] = None):
        self.delay = delay
        self.runtime = runtime or {}
        self.calls: Counter = Counter()
        self.options: list[CompileOptions] = []
        self._lock = threading.Lock()

    def compile(self, source: str, options: CompileOptions) -> CompileResult:
        with self._lock:
            self.calls[options.filename] += 1
            self.options.append(options)
        if self.delay:
            time.sleep(self.delay)

        if "COMPILE_FAIL" in source:
            raise CompileError(Path(options.filename), "Unexpected token", line=1, column=0)

        match = SCRIPT_BLOCK.search(source)
        code = match.group(1) if match else ""
        offset = source[: match.start(1)].count("\n") if match else 0
        return CompileResult(
            code=code,
            map=SourceMap.identity(options.filename, code, content=source, line_offset=offset),
        )

    def runtime_modules(self, project_root: Path) -> dict[str, Path]:
        return dict(self.runtime)

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


class FakeLinter:
    """Reports LINT_ERROR lines as errors and LINT_WARN lines as warnings."""

    def __init__(self) -> None:
        self.linted: list[str] = []
        self._lock = threading.Lock()

    def lint(self, source: str, filename: str) -> list[LintFinding]:
        with self._lock:
            self.linted.append(filename)
        findings = []
        for number, line in enumerate(source.split("\n"), start=1):
            if "LINT_ERROR" in line:
                findings.append(LintFinding(filename, number, 1, "error", "forbidden marker", "no-marker"))
            elif "LINT_WARN" in line:
                findings.append(LintFinding(filename, number, 1, "warning", "suspicious marker"))
        return findings


class FakeTranspiler:
    """Rewrites const/let declarations to var, line for line."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def transform(self, code: str, filename: str, options: dict[str, Any]) -> TransformResult:
        with self._lock:
            self.calls.append((filename, options))
        transformed = re.sub(r"\b(?:const|let)\b", "var", code)
        return TransformResult(code=transformed, map=SourceMap.identity(filename, transformed))


class FakeMinifier:
    """Strips indentation and prepends a banner line."""

    def __init__(self) -> None:
        self.calls = 0

    def minify(self, code: str) -> TransformResult:
        self.calls += 1
        lines = code.split("\n")
        out = [MINIFIED_BANNER]
        mappings: list[list[tuple[int, ...]]] = [[]]
        for number, line in enumerate(lines):
            stripped = line.lstrip()
            out.append(stripped)
            mappings.append([(0, 0, number, len(line) - len(stripped))])
        return TransformResult(
            code="\n".join(out),
            map=SourceMap(sources=["bundle.js"], mappings=mappings),
        )


# =============================================================================
# Project Helpers
# =============================================================================


def write_project(
    root: Path,
    files: dict[str, str],
    settings: Optional[dict[str, Any]] = None,
) -> Path:
    """Write files under root and a package.json carrying kiln settings."""
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    if settings is not None:
        manifest = {"name": root.name, "kiln": settings}
        (root / "package.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return root


def read_inline_map(path: Path) -> SourceMap:
    """Decode the inline map at the end of a generated file."""
    _, url = split_source_map_comment(path.read_text(encoding="utf-8"))
    assert url is not None, f"{path} has no sourceMappingURL comment"
    return load_map_reference(url, path.parent)


def line_index(path: Path, needle: str) -> int:
    """Index of the first line of path containing needle."""
    for index, line in enumerate(path.read_text(encoding="utf-8").split("\n")):
        if needle in line:
            return index
    raise AssertionError(f"{needle!r} not found in {path}")


def original_location(path: Path, needle: str) -> tuple[str, int]:
    """(source, original line) the line containing needle maps back to."""
    source_map = read_inline_map(path)
    position = source_map.original_position(line_index(path, needle), 0)
    assert position is not None, f"line with {needle!r} is unmapped"
    source_index, line, _, _ = position
    return source_map.sources[source_index], line


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def linter() -> FakeLinter:
    return FakeLinter()


@pytest.fixture
def minifier() -> FakeMinifier:
    return FakeMinifier()


@pytest.fixture
def transpiler() -> FakeTranspiler:
    return FakeTranspiler()


@pytest.fixture
def capabilities(
    compiler: FakeCompiler,
    linter: FakeLinter,
    transpiler: FakeTranspiler,
    minifier: FakeMinifier,
) -> Capabilities:
    """Capabilities with the stand-in tools and the real bundler and flattener."""
    return Capabilities(
        compiler=compiler,
        bundler=ModuleGraphBundler(),
        flattener=SourceMapFlattener(),
        linter=linter,
        transpiler=transpiler,
        minifier=minifier,
    )


@pytest.fixture
def basic_project(tmp_path: Path) -> Path:
    """The two-component project with a single index.js entry point."""
    return write_project(
        tmp_path / "project",
        BASIC_PROJECT,
        {"entryPoints": {"index.js": "src/index.js"}},
    )


@pytest.fixture
def make_config(basic_project: Path) -> Callable[..., BuildConfig]:
    """Factory for BuildConfig objects over basic_project.

    Keyword arguments are merged into the manifest settings.
    """

    def factory(root: Optional[Path] = None, **settings: Any) -> BuildConfig:
        merged: dict[str, Any] = {"entryPoints": {"index.js": "src/index.js"}}
        merged.update(settings)
        return parse_config(merged, root or basic_project)

    return factory
