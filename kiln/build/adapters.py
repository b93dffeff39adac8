"""
Node.js tool adapters.

Each adapter drives one JavaScript tool through a short `node -e` driver
that reads a JSON request on stdin and writes a JSON reply on stdout. The
tools are resolved from the project's node_modules, so the driver runs with
the project root as its working directory.
"""

from __future__ import annotations

import copy
import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from kiln.build.capabilities import CompileOptions, CompileResult, LintFinding, TransformResult
from kiln.build.resolver import resolve_node_module
from kiln.build.sourcemap import SourceMap
from kiln.core.errors import BundleError, CompileError, KilnError
from kiln.core.utils import run_cmd

LINT_RULES_PATH = Path(__file__).with_name("lint_rules.yaml")

# Import id of the helpers shared by every compiled component
SVELTE_SHARED = "svelte/shared.js"

_READ_STDIN = """
let input = ''
process.stdin.setEncoding('utf8')
process.stdin.on('data', (chunk) => { input += chunk })
process.stdin.on('end', () => {
  const request = JSON.parse(input)
  let reply
  try {
    reply = run(request)
  } catch (error) {
    reply = {error: {message: String(error.message || error), start: error.start || error.loc || null}}
  }
  process.stdout.write(JSON.stringify(reply))
})
"""

SVELTE_DRIVER = """
const svelte = require('svelte')
function run({source, options}) {
  const compiled = svelte.compile(source, options)
  const js = compiled.js || compiled
  return {code: js.code, map: js.map}
}
""" + _READ_STDIN

ESLINT_DRIVER = """
const eslint = require('eslint')
function run({source, filename, config}) {
  const linter = new eslint.Linter({configType: 'eslintrc'})
  const messages = linter.verify(source, config, {filename})
  return {messages: messages.map((m) => ({
    line: m.line || 0, column: m.column || 0, severity: m.severity,
    message: m.message, ruleId: m.ruleId || null
  }))}
}
""" + _READ_STDIN

BUBLE_DRIVER = """
const buble = require('buble')
function run({code, filename, options}) {
  const result = buble.transform(code, Object.assign({source: filename}, options))
  return {code: result.code, map: result.map}
}
""" + _READ_STDIN

UGLIFY_DRIVER = """
const uglify = require('uglify-es')
function run({code, options}) {
  const result = uglify.minify(code, Object.assign({sourceMap: {}}, options))
  if (result.error) { throw result.error }
  return {code: result.code, map: JSON.parse(result.map)}
}
""" + _READ_STDIN


def run_node_driver(
    script: str,
    request: dict[str, Any],
    cwd: Optional[Path],
    fail: Callable[[str], KilnError],
) -> dict[str, Any]:
    """Run a driver script and return its reply.

    Tool errors reported by the driver and process failures both raise the
    error built by fail.
    """
    try:
        result = run_cmd(
            ["node", "-e", script],
            cwd=cwd,
            capture=True,
            check=False,
            input=json.dumps(request),
        )
    except FileNotFoundError as e:
        raise fail("node executable not found on PATH") from e

    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip().splitlines()
        raise fail(detail[-1] if detail else f"node exited with status {result.returncode}")

    try:
        reply = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise fail(f"unexpected driver output: {result.stdout[:200]!r}") from e

    if reply.get("error"):
        raise fail(reply["error"].get("message", "unknown error"))
    return reply


def _map_from(reply: dict[str, Any]) -> Optional[SourceMap]:
    data = reply.get("map")
    if not data:
        return None
    if isinstance(data, str):
        return SourceMap.from_json(data)
    return SourceMap.from_dict(data)


# =============================================================================
# Component Compiler
# =============================================================================


class SvelteCompiler:
    """Compiles .html components with svelte."""

    def __init__(self, cwd: Optional[Path] = None):
        self.cwd = cwd

    def compile(self, source: str, options: CompileOptions) -> CompileResult:
        request = {
            "source": source,
            "options": {
                "dev": options.dev,
                "filename": options.filename,
                "format": options.format,
                "name": options.name,
                "shared": options.shared,
            },
        }

        reply = run_node_driver(
            SVELTE_DRIVER,
            request,
            self.cwd,
            lambda message: CompileError(Path(options.filename), message),
        )
        return CompileResult(code=reply["code"], map=_map_from(reply))

    def runtime_modules(self, project_root: Path) -> dict[str, Path]:
        shared = resolve_node_module(SVELTE_SHARED, project_root)
        return {SVELTE_SHARED: shared} if shared is not None else {}


# =============================================================================
# Linter
# =============================================================================


@lru_cache(maxsize=None)
def _read_lint_rules(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def load_lint_rules(path: Path = LINT_RULES_PATH) -> dict[str, Any]:
    """Load the packaged lint configuration; each caller gets its own copy."""
    return copy.deepcopy(_read_lint_rules(path))


SEVERITIES = {1: "warning", 2: "error"}


class EslintLinter:
    """Lints sources with eslint using the packaged rule set."""

    def __init__(self, cwd: Optional[Path] = None, config: Optional[dict[str, Any]] = None):
        self.cwd = cwd
        self.config = config if config is not None else load_lint_rules()

    def lint(self, source: str, filename: str) -> list[LintFinding]:
        reply = run_node_driver(
            ESLINT_DRIVER,
            {"source": source, "filename": filename, "config": self.config},
            self.cwd,
            lambda message: BundleError(filename, f"eslint failed: {message}"),
        )
        return [
            LintFinding(
                path=filename,
                line=m["line"],
                column=m["column"],
                severity=SEVERITIES.get(m["severity"], "warning"),
                message=m["message"],
                rule=m.get("ruleId"),
            )
            for m in reply.get("messages", [])
        ]


# =============================================================================
# Transpiler / Minifier
# =============================================================================


class BubleTranspiler:
    """Down-levels ES2015+ syntax with buble."""

    def __init__(self, cwd: Optional[Path] = None):
        self.cwd = cwd

    def transform(self, code: str, filename: str, options: dict[str, Any]) -> TransformResult:
        reply = run_node_driver(
            BUBLE_DRIVER,
            {"code": code, "filename": filename, "options": options},
            self.cwd,
            lambda message: BundleError(filename, f"buble failed: {message}"),
        )
        return TransformResult(code=reply["code"], map=_map_from(reply))


class UglifyMinifier:
    """Minifies bundles with uglify-es."""

    def __init__(self, cwd: Optional[Path] = None, options: Optional[dict[str, Any]] = None):
        self.cwd = cwd
        self.options = options or {}

    def minify(self, code: str) -> TransformResult:
        reply = run_node_driver(
            UGLIFY_DRIVER,
            {"code": code, "options": self.options},
            self.cwd,
            lambda message: BundleError("bundle", f"uglify failed: {message}"),
        )
        return TransformResult(code=reply["code"], map=_map_from(reply))
