"""
Tests for import resolution.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kiln.build.caching import ComponentCache, PathRewriteTable
from kiln.build.resolver import PathResolver, resolve_node_module


def _write(path: Path, text: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path.resolve()


@pytest.fixture
def compiled(root: Path) -> list[Path]:
    return []


@pytest.fixture
def resolver(root: Path, compiled: list[Path]) -> PathResolver:
    """Resolver whose compile function just records the component and
    returns its would-be artifact path under output/."""
    table = PathRewriteTable()

    def compile_fn(component: Path) -> Path:
        compiled.append(component)
        relative = component.relative_to(root).with_suffix(".js")
        return _write(root / "output" / relative.parent / f"{relative.name}.debug", "")

    return PathResolver(root, table, ComponentCache(table, compile_fn))


# =============================================================================
# Entry Module Search
# =============================================================================


@pytest.mark.evergreen
class TestEntrySearch:
    """Entry references are searched relative to the project root."""

    def test_literal_path(self, root: Path, resolver: PathResolver) -> None:
        entry = _write(root / "src" / "index.js")
        assert resolver.resolve("src/index.js") == entry

    def test_directory_index(self, root: Path, resolver: PathResolver) -> None:
        entry = _write(root / "src" / "index.js")
        assert resolver.resolve("src") == entry

    def test_extensionless_index(self, root: Path, resolver: PathResolver) -> None:
        entry = _write(root / "src" / "index")
        assert resolver.resolve("src") == entry

    def test_missing_entry(self, resolver: PathResolver) -> None:
        assert resolver.resolve("src/missing.js") is None


# =============================================================================
# Module References
# =============================================================================


@pytest.mark.evergreen
class TestModuleResolution:
    def test_relative_module(self, root: Path, resolver: PathResolver) -> None:
        importer = _write(root / "src" / "index.js")
        util = _write(root / "src" / "lib" / "util.js")
        assert resolver.resolve("./lib/util.js", importer) == util

    def test_missing_module(self, root: Path, resolver: PathResolver) -> None:
        importer = _write(root / "src" / "index.js")
        assert resolver.resolve("./nope.js", importer) is None

    def test_component_is_compiled_on_first_use(
        self, root: Path, resolver: PathResolver, compiled: list[Path]
    ) -> None:
        importer = _write(root / "src" / "index.js")
        _write(root / "src" / "App.html")

        first = resolver.resolve("./App.html", importer)
        second = resolver.resolve("./App.html", importer)

        assert first == root / "output" / "src" / "App.js.debug"
        assert second == first
        assert compiled == [root / "src" / "App.html"]

    def test_module_path_of_compiled_component_is_rewritten(
        self, root: Path, resolver: PathResolver
    ) -> None:
        importer = _write(root / "src" / "index.js")
        _write(root / "src" / "App.html")
        artifact = resolver.resolve("./App.html", importer)

        assert resolver.resolve("./App.js", importer) == artifact

    def test_import_from_compiled_module_uses_source_directory(
        self, root: Path, resolver: PathResolver
    ) -> None:
        importer = _write(root / "src" / "index.js")
        _write(root / "src" / "App.html")
        helper = _write(root / "src" / "helper.js")
        artifact = resolver.resolve("./App.html", importer)

        assert resolver.source_dir(artifact) == root / "src"
        assert resolver.resolve("./helper.js", artifact) == helper

    def test_nested_component_from_compiled_module(
        self, root: Path, resolver: PathResolver, compiled: list[Path]
    ) -> None:
        importer = _write(root / "src" / "index.js")
        _write(root / "src" / "App.html")
        _write(root / "src" / "Nested.html")
        artifact = resolver.resolve("./App.html", importer)

        nested = resolver.resolve("./Nested.html", artifact)
        assert nested == root / "output" / "src" / "Nested.js.debug"
        assert compiled[-1] == root / "src" / "Nested.html"

    def test_runtime_module_ids(self, root: Path, resolver: PathResolver) -> None:
        shared = _write(root / "node_modules" / "svelte" / "shared.js")
        resolver.runtime_modules["svelte/shared.js"] = shared
        importer = _write(root / "src" / "index.js")

        assert resolver.resolve("svelte/shared.js", importer) == shared


# =============================================================================
# Third-party Fallback
# =============================================================================


@pytest.mark.evergreen
class TestResolveNodeModule:
    """Node-style lookup for references the project resolver leaves alone."""

    def test_package_module_field(self, root: Path) -> None:
        package = root / "node_modules" / "lib"
        _write(package / "package.json", json.dumps({"main": "cjs.js", "module": "esm.js"}))
        esm = _write(package / "esm.js")
        assert resolve_node_module("lib", root / "src") == esm

    def test_package_main_fallback(self, root: Path) -> None:
        package = root / "node_modules" / "lib"
        _write(package / "package.json", json.dumps({"main": "lib/main"}))
        main = _write(package / "lib" / "main.js")
        assert resolve_node_module("lib", root) == main

    def test_package_without_manifest_uses_index(self, root: Path) -> None:
        index = _write(root / "node_modules" / "lib" / "index.js")
        assert resolve_node_module("lib", root) == index

    def test_scoped_package_subpath(self, root: Path) -> None:
        target = _write(root / "node_modules" / "@scope" / "pkg" / "util.js")
        assert resolve_node_module("@scope/pkg/util", root / "src" / "deep") == target

    def test_relative_reference_gets_extension(self, root: Path) -> None:
        target = _write(root / "src" / "util.js")
        assert resolve_node_module("./util", root / "src") == target

    def test_relative_directory_index(self, root: Path) -> None:
        target = _write(root / "src" / "lib" / "index.js")
        assert resolve_node_module("./lib", root / "src") == target

    def test_not_found(self, root: Path) -> None:
        assert resolve_node_module("missing", root) is None
