"""
Pipeline stages handed to the bundler.

A stage can resolve import ids, transform single modules, and transform
the finished bundle. The bundler asks stages in order; the first stage that
resolves an id wins, and transforms are applied one after another.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from kiln.build.caching import PathRewriteTable
from kiln.build.capabilities import LintFinding, Linter, Minifier, TransformResult, Transpiler
from kiln.build.resolver import PathResolver, resolve_node_module
from kiln.core.errors import LintError
from kiln.core.utils import log


class Stage:
    """Base stage; every hook is optional and defaults to a no-op."""

    name = "stage"

    def resolve_id(self, reference: str, importer: Optional[Path]) -> Optional[Path]:
        return None

    def transform(self, code: str, path: Path) -> Optional[TransformResult]:
        return None

    def transform_bundle(self, code: str) -> Optional[TransformResult]:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def _display_path(path: Path, project_root: Path) -> str:
    return Path(os.path.relpath(path, project_root)).as_posix()


# =============================================================================
# Resolution
# =============================================================================


class ResolveStage(Stage):
    """Project resolution first, then the node_modules fallback."""

    name = "resolve"

    def __init__(self, resolver: PathResolver):
        self.resolver = resolver

    def resolve_id(self, reference: str, importer: Optional[Path]) -> Optional[Path]:
        resolved = self.resolver.resolve(reference, importer)
        if resolved is None and importer is not None:
            resolved = resolve_node_module(reference, self.resolver.source_dir(importer))
        return resolved


# =============================================================================
# Lint
# =============================================================================


def format_findings(filename: str, findings: list[LintFinding]) -> None:
    """Print findings grouped under their file, eslint 'stylish' style."""
    errors = sum(1 for f in findings if f.is_error)
    warnings = len(findings) - errors

    log.info(filename)
    for finding in findings:
        rule = f"  {finding.rule}" if finding.rule else ""
        line = f"{finding.line}:{finding.column}  {finding.message}{rule}"
        if finding.is_error:
            log.error(line)
        else:
            log.warning(line)
    log.dim(f"{len(findings)} problem(s) ({errors} error(s), {warnings} warning(s))")


class LintStage(Stage):
    """Lints project sources; compiled components and vendored code are skipped."""

    name = "lint"

    def __init__(self, linter: Linter, table: PathRewriteTable, project_root: Path):
        self.linter = linter
        self.table = table
        self.project_root = project_root

    def should_lint(self, path: Path) -> bool:
        if "node_modules" in path.parts:
            return False
        return not self.table.is_output(path)

    def transform(self, code: str, path: Path) -> Optional[TransformResult]:
        if not self.should_lint(path):
            return None

        filename = _display_path(path, self.project_root)
        findings = self.linter.lint(code, filename)
        if not findings:
            return None

        format_findings(filename, findings)
        errors = [f for f in findings if f.is_error]
        if errors:
            raise LintError(path, errors)
        return None


# =============================================================================
# Transpile / Minify
# =============================================================================


class TranspileStage(Stage):
    name = "transpile"

    def __init__(self, transpiler: Transpiler, options: dict[str, Any], project_root: Path):
        self.transpiler = transpiler
        self.options = options
        self.project_root = project_root

    def transform(self, code: str, path: Path) -> Optional[TransformResult]:
        return self.transpiler.transform(code, _display_path(path, self.project_root), self.options)


class MinifyStage(Stage):
    name = "minify"

    def __init__(self, minifier: Minifier):
        self.minifier = minifier

    def transform_bundle(self, code: str) -> Optional[TransformResult]:
        return self.minifier.minify(code)
