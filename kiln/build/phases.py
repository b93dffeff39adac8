"""
Build phases for kiln.

Individual build operations that the orchestrator strings together:
output preparation, component compilation, bundling and source-map merge.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from kiln.build.caching import compute_component_output_path, load_artifact
from kiln.build.capabilities import CompileOptions
from kiln.build.sourcemap import SourceMap, source_map_comment
from kiln.build.stages import LintStage, MinifyStage, ResolveStage, Stage, TranspileStage
from kiln.core.errors import BundleError, CompileError, ConfigurationError, KilnError, MapMergeError
from kiln.core.utils import ensure_dir, log, replace_file

if TYPE_CHECKING:
    from kiln.build.config import BuildConfig
    from kiln.build.context import BuildContext


def _display(path: Path, root: Path) -> str:
    return Path(os.path.relpath(path, root)).as_posix()


# =============================================================================
# Output Directory
# =============================================================================


def prepare_output_dir(config: "BuildConfig") -> Path:
    """Create the output directory; an existing one is reused."""
    return ensure_dir(config.output)


# =============================================================================
# Component Compilation
# =============================================================================


def _anchor_map(source_map: SourceMap, component: Path, output_path: Path, text: str) -> SourceMap:
    """Point a compiled component's map at its source, relative to the artifact."""
    relative = Path(os.path.relpath(component, output_path.parent)).as_posix()
    count = max(len(source_map.sources), 1)
    return SourceMap(
        sources=[relative] * count,
        mappings=source_map.mappings,
        names=source_map.names,
        sources_content=[text] * count,
        file=output_path.name,
    )


def compile_component(context: "BuildContext", component: Path) -> Path:
    """Compile one component unless its artifact is still fresh.

    Returns the artifact path. Registration in the rewrite table is left to
    the caller (ComponentCache.get_or_compile).
    """
    config = context.config
    root = config.project_root
    output_path = compute_component_output_path(config.output, root, component, config.build_mode)
    display = _display(component, root)

    try:
        artifact = load_artifact(component, output_path)
    except FileNotFoundError as e:
        raise CompileError(component, "component source not found") from e

    if artifact.is_fresh(config.build_mode):
        log.dim(f"cached {display} -> {_display(output_path, root)}")
        return output_path

    log.info(f"compile {display} -> {_display(output_path, root)}")
    ensure_dir(output_path.parent)

    try:
        text = component.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise CompileError(component, f"source is not valid UTF-8 (byte {e.start})") from e
    except OSError as e:
        raise CompileError(component, f"could not read source: {e.strerror or e}") from e

    options = CompileOptions(
        filename=display,
        name=component.stem,
        dev=config.debug_mode,
        format="es",
        shared=True,
    )

    try:
        result = context.capabilities.compiler.compile(text, options)
    except CompileError:
        raise
    except Exception as e:
        raise CompileError(component, str(e)) from e

    context.record_compile(component)

    code = result.code.rstrip("\n")
    if result.map is not None:
        code = f"{code}\n{source_map_comment(_anchor_map(result.map, component, output_path, text))}"
    replace_file(output_path, f"{code}\n")
    return output_path


# =============================================================================
# Bundling
# =============================================================================


def build_stages(context: "BuildContext") -> list[Stage]:
    """Assemble the stage list: resolve, lint, transpile, minify.

    Lint must see untransformed project source and transpiling must happen
    before minification, so the order is fixed.
    """
    config = context.config
    capabilities = context.capabilities
    stages: list[Stage] = [ResolveStage(context.resolver)]

    if config.lint:
        if capabilities.linter is None:
            raise ConfigurationError("Linting is enabled but no linter is available")
        stages.append(LintStage(capabilities.linter, context.table, config.project_root))

    if config.transpile is not None:
        if capabilities.transpiler is None:
            raise ConfigurationError("Transpile options are set but no transpiler is available")
        stages.append(TranspileStage(capabilities.transpiler, config.transpile, config.project_root))

    if config.minify:
        if capabilities.minifier is None:
            raise ConfigurationError("Production builds need a minifier")
        stages.append(MinifyStage(capabilities.minifier))

    return stages


def bundle_entry_point(context: "BuildContext", stages: list[Stage], name: str, entry: str) -> Path:
    """Bundle one entry point into <output>/<name>."""
    config = context.config
    output_path = config.output / name
    log.info(f"bundle {entry} -> {_display(output_path, config.project_root)}")

    try:
        result = context.capabilities.bundler.bundle(entry, stages, output_path)
    except KilnError:
        raise
    except Exception as e:
        raise BundleError(name, str(e)) from e
    return result.path


# =============================================================================
# Source Maps
# =============================================================================


def merge_source_maps(context: "BuildContext", output_path: Path) -> bool:
    """Flatten the map chain of a bundle in place.

    Returns False if merging failed and was reported as a warning. With
    strict source maps the MapMergeError propagates instead.
    """
    config = context.config
    log.info(f"merge maps {_display(output_path, config.project_root)}")

    try:
        context.capabilities.flattener.flatten(output_path)
    except MapMergeError as e:
        if config.strict_source_maps:
            raise
        log.warning(str(e))
        context.record_map_warning(e)
        return False
    return True


def build_entry_point(context: "BuildContext", stages: list[Stage], name: str, entry: str) -> Path:
    """Bundle an entry point, then merge its source maps."""
    output_path = bundle_entry_point(context, stages, name, entry)
    merge_source_maps(context, output_path)
    return output_path
