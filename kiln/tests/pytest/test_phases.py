"""
Tests for the individual build phases.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import read_inline_map
from kiln.build.capabilities import Capabilities
from kiln.build.context import BuildContext
from kiln.build.phases import (
    build_stages,
    bundle_entry_point,
    compile_component,
    merge_source_maps,
    prepare_output_dir,
)
from kiln.core.errors import CompileError, ConfigurationError, FilesystemError, MapMergeError


def _bump(path: Path, seconds: float = 10) -> None:
    """Move a file's mtime seconds into the future."""
    stat = path.stat()
    os.utime(path, (stat.st_atime + seconds, stat.st_mtime + seconds))


class BrokenFlattener:
    def flatten(self, path: Path):
        raise MapMergeError(path, "chain is unreadable")


# =============================================================================
# Output Directory
# =============================================================================


@pytest.mark.evergreen
class TestPrepareOutputDir:
    def test_creates_and_reuses(self, make_config) -> None:
        config = make_config(output="build/js")
        assert prepare_output_dir(config) == config.output
        assert config.output.is_dir()
        assert prepare_output_dir(config) == config.output

    def test_file_in_the_way(self, make_config) -> None:
        config = make_config(output="blocked")
        config.output.write_text("not a directory")
        with pytest.raises(FilesystemError, match="not a directory"):
            prepare_output_dir(config)


# =============================================================================
# Component Compilation
# =============================================================================


@pytest.mark.evergreen
class TestCompileComponent:
    """compile_component writes an artifact with an inline map, once."""

    def test_writes_artifact_with_map(self, make_config, capabilities: Capabilities, compiler) -> None:
        config = make_config(debugMode=True)
        context = BuildContext(config, capabilities)
        component = config.project_root / "src" / "Nested.html"

        output = compile_component(context, component)

        assert output == config.output / "src" / "Nested.js.debug"
        assert output.read_text().startswith("export default function Nested() {}\n//# sourceMappingURL=")
        source_map = read_inline_map(output)
        assert source_map.sources == ["../../src/Nested.html"]
        assert source_map.sources_content == [component.read_text()]
        assert source_map.original_position(0, 0) == (0, 2, 0, None)
        assert context.compiled == [component]

    def test_compile_options(self, make_config, capabilities: Capabilities, compiler) -> None:
        config = make_config(debugMode=True)
        compile_component(BuildContext(config, capabilities), config.project_root / "src" / "App.html")

        options = compiler.options[0]
        assert options.filename == "src/App.html"
        assert options.name == "App"
        assert options.dev is True
        assert options.format == "es"
        assert options.shared is True

    def test_fresh_artifact_is_not_recompiled(self, make_config, capabilities: Capabilities, compiler) -> None:
        config = make_config(debugMode=True)
        component = config.project_root / "src" / "App.html"

        compile_component(BuildContext(config, capabilities), component)
        second = BuildContext(config, capabilities)
        compile_component(second, component)

        assert compiler.total_calls == 1
        assert second.compiled == []

    def test_touched_source_is_recompiled(self, make_config, capabilities: Capabilities, compiler) -> None:
        config = make_config(debugMode=True)
        component = config.project_root / "src" / "App.html"

        compile_component(BuildContext(config, capabilities), component)
        _bump(component)
        compile_component(BuildContext(config, capabilities), component)

        assert compiler.total_calls == 2

    def test_mode_switch_recompiles(self, make_config, capabilities: Capabilities, compiler) -> None:
        component = make_config().project_root / "src" / "App.html"

        debug = compile_component(BuildContext(make_config(debugMode=True), capabilities), component)
        prod = compile_component(BuildContext(make_config(debugMode=False), capabilities), component)

        assert compiler.total_calls == 2
        assert debug.name == "App.js.debug"
        assert prod.name == "App.js.prod"
        assert debug.exists() and prod.exists()

    def test_compile_error_names_component(self, make_config, capabilities: Capabilities) -> None:
        config = make_config(debugMode=True)
        component = config.project_root / "src" / "Broken.html"
        component.write_text("<script>\nCOMPILE_FAIL\n</script>\n")

        with pytest.raises(CompileError, match="Broken.html"):
            compile_component(BuildContext(config, capabilities), component)
        assert not (config.output / "src" / "Broken.js.debug").exists()

    def test_missing_component(self, make_config, capabilities: Capabilities) -> None:
        config = make_config()
        with pytest.raises(CompileError, match="not found"):
            compile_component(BuildContext(config, capabilities), config.project_root / "Gone.html")

    def test_undecodable_source_names_component(
        self, make_config, capabilities: Capabilities, compiler
    ) -> None:
        config = make_config(debugMode=True)
        component = config.project_root / "src" / "Nested.html"
        component.write_bytes(b"<script>\n\xff\xfe bad\n</script>\n")

        with pytest.raises(CompileError, match="Nested.html.*not valid UTF-8") as excinfo:
            compile_component(BuildContext(config, capabilities), component)

        assert excinfo.value.component == component
        assert compiler.total_calls == 0
        assert not (config.output / "src" / "Nested.js.debug").exists()

    def test_unexpected_compiler_failure_is_wrapped(self, make_config, capabilities: Capabilities, compiler) -> None:
        def explode(source, options):
            raise RuntimeError("compiler crashed")

        compiler.compile = explode
        config = make_config()
        with pytest.raises(CompileError, match="compiler crashed"):
            compile_component(BuildContext(config, capabilities), config.project_root / "src" / "App.html")


# =============================================================================
# Stages
# =============================================================================


@pytest.mark.evergreen
class TestBuildStages:
    """Stage order is resolve, lint, transpile, minify; disabled stages are left out."""

    def test_debug_without_lint(self, make_config, capabilities: Capabilities) -> None:
        context = BuildContext(make_config(debugMode=True, eslint=False), capabilities)
        assert [stage.name for stage in build_stages(context)] == ["resolve"]

    def test_full_prod_pipeline(self, make_config, capabilities: Capabilities) -> None:
        context = BuildContext(make_config(buble={"target": {"ie": 11}}), capabilities)
        assert [stage.name for stage in build_stages(context)] == [
            "resolve",
            "lint",
            "transpile",
            "minify",
        ]

    def test_missing_linter(self, make_config, capabilities: Capabilities) -> None:
        capabilities.linter = None
        with pytest.raises(ConfigurationError, match="linter"):
            build_stages(BuildContext(make_config(), capabilities))

    def test_missing_minifier_for_prod(self, make_config, capabilities: Capabilities) -> None:
        capabilities.minifier = None
        with pytest.raises(ConfigurationError, match="minifier"):
            build_stages(BuildContext(make_config(eslint=False), capabilities))


# =============================================================================
# Bundling and Map Merge
# =============================================================================


@pytest.mark.evergreen
class TestBundleAndMerge:
    def test_bundle_written_under_output(self, make_config, capabilities: Capabilities) -> None:
        config = make_config(debugMode=True, eslint=False)
        context = BuildContext(config, capabilities)

        path = bundle_entry_point(context, build_stages(context), "app.js", "src/index.js")

        assert path == config.output / "app.js"
        assert "__kiln_require(0);" in path.read_text()

    def test_merge_failure_is_a_warning(self, make_config, capabilities: Capabilities, capsys) -> None:
        capabilities.flattener = BrokenFlattener()
        config = make_config()
        context = BuildContext(config, capabilities)

        assert merge_source_maps(context, config.output / "index.js") is False
        assert len(context.map_warnings) == 1
        assert "chain is unreadable" in capsys.readouterr().out

    def test_merge_failure_is_fatal_when_strict(self, make_config, capabilities: Capabilities) -> None:
        capabilities.flattener = BrokenFlattener()
        config = make_config(strictSourceMaps=True)

        with pytest.raises(MapMergeError):
            merge_source_maps(BuildContext(config, capabilities), config.output / "index.js")
