"""
Error taxonomy for kiln builds.

Configuration and component-compile errors abort the whole build. Lint and
bundle errors abort only the entry point that raised them; the orchestrator
collects those into a single BuildFailed once every entry point has settled.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class KilnError(RuntimeError):
    """Base class for every error raised by a kiln build."""


class ConfigurationError(KilnError):
    """Malformed or missing project configuration."""


class FilesystemError(KilnError):
    """Directory creation or file I/O failed."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{message}: {path}")


class CompileError(KilnError):
    """The component compiler rejected a component."""

    def __init__(
        self,
        component: Path,
        message: str,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ):
        self.component = component
        self.message = message
        self.line = line
        self.column = column
        location = f":{line}:{column}" if line is not None else ""
        super().__init__(f"Failed to compile {component}{location}: {message}")


class LintError(KilnError):
    """A source file produced error-severity lint findings."""

    def __init__(self, path: Path, findings: Sequence):
        self.path = path
        self.findings = list(findings)
        super().__init__(f"Errors were found in {path} ({len(self.findings)} finding(s))")


class BundleError(KilnError):
    """Resolution or bundler failure for one entry point."""

    def __init__(self, entry: str, message: str):
        self.entry = entry
        super().__init__(f"{entry}: {message}")


class MapMergeError(KilnError):
    """Flattening the source-map chain of an output failed."""

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"Could not merge source maps for {path}: {message}")


class BuildFailed(KilnError):
    """One or more entry points failed; raised after all of them settled."""

    def __init__(self, failures: dict[str, Exception]):
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"{len(self.failures)} entry point(s) failed: {names}")
