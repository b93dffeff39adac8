"""
Build configuration for kiln.

Constants, the manifest schema, the BuildConfig dataclass, and manifest
loading from package.json or kiln.yaml.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from kiln.core.errors import ConfigurationError

# =============================================================================
# Constants
# =============================================================================

DEFAULT_OUTPUT = "./output"

# Key holding kiln settings inside package.json
MANIFEST_FILE = "package.json"
MANIFEST_KEY = "kiln"

# Standalone config files, tried when package.json carries no kiln key
YAML_CONFIG_FILES = ("kiln.yaml", "kiln.yml")

COMPONENT_SUFFIX = ".html"
MODULE_SUFFIX = ".js"

DEBUG_MODE = "debug"
PROD_MODE = "prod"
BUILD_MODES = (DEBUG_MODE, PROD_MODE)


# =============================================================================
# Manifest Schema
# =============================================================================


class ManifestModel(BaseModel):
    """Validated contents of the `kiln` block of a project manifest."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    output: str = Field(DEFAULT_OUTPUT, description="Output directory")
    entry_points: Dict[str, str] = Field(
        validation_alias=AliasChoices("entryPoints", "entry_points"),
        description="Output name -> entry source path",
    )
    components: List[str] = Field(
        default_factory=list, description="Component sources compiled up front"
    )
    debug_mode: bool = Field(
        False,
        validation_alias=AliasChoices("debugMode", "debug_mode"),
        description="Unminified build with runtime warnings",
    )
    eslint: bool = Field(True, description="Lint project sources while bundling")
    transpile: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("transpile", "buble"),
        description="Down-level transpile options; absent disables the stage",
    )
    strict_source_maps: bool = Field(
        False,
        validation_alias=AliasChoices("strictSourceMaps", "strict_source_maps"),
        description="Treat source-map merge failures as fatal",
    )
    jobs: Optional[int] = Field(None, ge=1, description="Concurrent entry point builds")

    @field_validator("output")
    @classmethod
    def _normalize_output(cls, value: str) -> str:
        stripped = value.rstrip("/")
        if not stripped:
            if value:
                return "/"
            raise ValueError("output must not be empty")
        return stripped

    @field_validator("entry_points")
    @classmethod
    def _check_entry_points(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value:
            raise ValueError("at least one entry point is required")
        for name, source in value.items():
            if not name.strip():
                raise ValueError("entry point output names must not be empty")
            if not source.strip():
                raise ValueError(f"entry point {name!r} has no source path")
        return value


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class BuildConfig:
    """Configuration for a build run."""

    project_root: Path
    output: Path
    entry_points: dict[str, str]
    components: list[str] = field(default_factory=list)
    debug_mode: bool = False
    lint: bool = True
    transpile: Optional[dict[str, Any]] = None
    strict_source_maps: bool = False
    jobs: Optional[int] = None
    verbose: bool = False

    @property
    def build_mode(self) -> str:
        """Mode identity that keys compiled artifacts: 'debug' or 'prod'."""
        return DEBUG_MODE if self.debug_mode else PROD_MODE

    @property
    def minify(self) -> bool:
        return not self.debug_mode


# =============================================================================
# Manifest Loading
# =============================================================================


def _try_load_json(path: Path, default_if_empty: Any) -> Any:
    """Load a JSON file. Missing file -> None, empty file -> default."""
    try:
        data = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None

    if not data.strip():
        return default_if_empty

    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f'Error parsing JSON file "{path}": {e}') from e


def _try_load_yaml(path: Path) -> Any:
    try:
        data = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None

    try:
        return yaml.safe_load(data) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f'Error parsing YAML file "{path}": {e}') from e


def find_manifest(project_root: Path) -> tuple[dict[str, Any], Path]:
    """Locate the raw kiln settings for a project.

    Returns (settings, source_file). Raises ConfigurationError if no
    settings can be found.
    """
    package_json = project_root / MANIFEST_FILE
    root_config = _try_load_json(package_json, {})
    if isinstance(root_config, dict) and MANIFEST_KEY in root_config:
        return _as_mapping(root_config[MANIFEST_KEY], package_json), package_json

    for name in YAML_CONFIG_FILES:
        path = project_root / name
        data = _try_load_yaml(path)
        if data is not None:
            return _as_mapping(data, path), path

    raise ConfigurationError(
        f'Failed to find "{MANIFEST_KEY}" key in "{package_json}" '
        f"(or one of {', '.join(YAML_CONFIG_FILES)})."
    )


def _as_mapping(data: Any, source: Path) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration in {source} must be an object. Got {data!r}")
    return data


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue["loc"]) or "(root)"
        lines.append(f"{location}: {issue['msg']}")
    return "; ".join(lines)


def parse_config(
    settings: dict[str, Any],
    project_root: Path,
    debug_mode: Optional[bool] = None,
    strict_source_maps: Optional[bool] = None,
    verbose: bool = False,
) -> BuildConfig:
    """Validate raw settings and build a BuildConfig.

    Explicit arguments override the manifest when not None.
    """
    try:
        manifest = ManifestModel.model_validate(settings)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {_format_validation_error(e)}") from e

    project_root = project_root.resolve()
    return BuildConfig(
        project_root=project_root,
        output=(project_root / manifest.output).resolve(),
        entry_points=dict(manifest.entry_points),
        components=list(manifest.components),
        debug_mode=manifest.debug_mode if debug_mode is None else debug_mode,
        lint=manifest.eslint,
        transpile=manifest.transpile,
        strict_source_maps=(
            manifest.strict_source_maps if strict_source_maps is None else strict_source_maps
        ),
        jobs=manifest.jobs,
        verbose=verbose,
    )


def load_config(
    project_root: Path,
    debug_mode: Optional[bool] = None,
    strict_source_maps: Optional[bool] = None,
    verbose: bool = False,
) -> BuildConfig:
    """Find, validate and return the build configuration for a project."""
    if not project_root.is_dir():
        raise ConfigurationError(f"Project directory not found: {project_root}")

    settings, _ = find_manifest(project_root)
    return parse_config(
        settings,
        project_root,
        debug_mode=debug_mode,
        strict_source_maps=strict_source_maps,
        verbose=verbose,
    )
