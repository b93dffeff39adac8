"""
kiln.build - Build pipeline for kiln.

Provides component compilation with staleness caching, module resolution,
bundling and source-map flattening, driven by the BuildOrchestrator.
"""

from kiln.build.config import (
    DEFAULT_OUTPUT,
    MANIFEST_FILE,
    MANIFEST_KEY,
    DEBUG_MODE,
    PROD_MODE,
    BuildConfig,
    ManifestModel,
    find_manifest,
    parse_config,
    load_config,
)
from kiln.build.caching import (
    CompiledArtifact,
    ComponentCache,
    PathRewriteTable,
    component_key,
    compute_component_output_path,
)
from kiln.build.capabilities import (
    Capabilities,
    CompileOptions,
    CompileResult,
    TransformResult,
    LintFinding,
    BundleResult,
    default_capabilities,
)
from kiln.build.resolver import PathResolver, resolve_node_module
from kiln.build.context import BuildContext
from kiln.build.orchestrator import BuildOrchestrator, BuildReport

__all__ = [
    # Constants
    "DEFAULT_OUTPUT",
    "MANIFEST_FILE",
    "MANIFEST_KEY",
    "DEBUG_MODE",
    "PROD_MODE",
    # Configuration
    "BuildConfig",
    "ManifestModel",
    "find_manifest",
    "parse_config",
    "load_config",
    # Caching
    "CompiledArtifact",
    "ComponentCache",
    "PathRewriteTable",
    "component_key",
    "compute_component_output_path",
    # Capabilities
    "Capabilities",
    "CompileOptions",
    "CompileResult",
    "TransformResult",
    "LintFinding",
    "BundleResult",
    "default_capabilities",
    # Resolution
    "PathResolver",
    "resolve_node_module",
    # Orchestrator
    "BuildContext",
    "BuildOrchestrator",
    "BuildReport",
]
