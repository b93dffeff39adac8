"""
kiln.core - Foundation layer: logging, filesystem primitives, timing, errors.
"""

from kiln.core.errors import (
    KilnError,
    ConfigurationError,
    FilesystemError,
    CompileError,
    LintError,
    BundleError,
    MapMergeError,
    BuildFailed,
)
from kiln.core.utils import (
    log,
    Logger,
    file_exists,
    ensure_dir,
    replace_file,
    run_cmd,
)
from kiln.core.timing import BuildTimer, format_duration

__all__ = [
    # Errors
    "KilnError",
    "ConfigurationError",
    "FilesystemError",
    "CompileError",
    "LintError",
    "BundleError",
    "MapMergeError",
    "BuildFailed",
    # Logging
    "log",
    "Logger",
    # Filesystem
    "file_exists",
    "ensure_dir",
    "replace_file",
    # Runtime
    "run_cmd",
    # Timing
    "BuildTimer",
    "format_duration",
]
