"""
A small ES module bundler.

Walks the import graph of an entry module through the stage list, rewrites
`import`/`export` statements into calls on a module registry, and writes a
single self-executing script with an inline source map. Rewrites keep every
statement on its original lines, so each bundled line maps straight back to
the same line of its module.

Only ES module syntax is understood; CommonJS `require`/`module.exports` and
dynamic `import()` are left untouched.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from kiln.build.capabilities import BundleResult
from kiln.build.sourcemap import (
    SourceMap,
    Segment,
    compose,
    source_map_comment,
    split_source_map_comment,
    trace,
)
from kiln.build.stages import Stage
from kiln.core.errors import BundleError
from kiln.core.utils import replace_file

logger = logging.getLogger(__name__)

REQUIRE = "__kiln_require"

RUNTIME_PRELUDE = f"""(function () {{
'use strict';
var __kiln_modules = {{}};
var __kiln_cache = {{}};
function {REQUIRE}(id) {{
  var cached = __kiln_cache[id];
  if (cached) {{ return cached.exports; }}
  var module = __kiln_cache[id] = {{ exports: {{}} }};
  __kiln_modules[id].call(undefined, module.exports, {REQUIRE});
  return module.exports;
}}
function __kiln_export(exports, getters) {{
  for (var key in getters) {{
    Object.defineProperty(exports, key, {{ enumerable: true, get: getters[key] }});
  }}
}}
function __kiln_export_star(exports, source) {{
  Object.keys(source).forEach(function (key) {{
    if (key !== 'default' && !Object.prototype.hasOwnProperty.call(exports, key)) {{
      Object.defineProperty(exports, key, {{ enumerable: true, get: function () {{ return source[key]; }} }});
    }}
  }});
}}"""

_SOURCE = r"(?P<quote>['\"])(?P<source>[^'\"\n]+)(?P=quote)"

IMPORT_STATEMENT = re.compile(
    r"^(?P<indent>[ \t]*)import\s*(?:(?P<clause>[\w$*{}\s,]+?)\s*from\s*)?" + _SOURCE + r"[ \t]*;?",
    re.MULTILINE,
)
EXPORT_FROM = re.compile(
    r"^(?P<indent>[ \t]*)export\s*(?:\*(?:\s*as\s+(?P<namespace>[\w$]+))?|\{(?P<names>[^}]*)\})\s*from\s*"
    + _SOURCE
    + r"[ \t]*;?",
    re.MULTILINE,
)
EXPORT_LIST = re.compile(r"^(?P<indent>[ \t]*)export\s*\{(?P<names>[^}]*)\}[ \t]*;?", re.MULTILINE)
# `kind` keeps its trailing whitespace so the declaration is reproduced as written
_FUNCTION_OR_CLASS = r"(?P<kind>(?:async\s+)?function\b\s*(?:\*\s*)?|class\b\s*)"

EXPORT_DEFAULT_DECLARATION = re.compile(
    r"^(?P<indent>[ \t]*)export\s+default\s+" + _FUNCTION_OR_CLASS + r"(?P<name>(?!extends\b)[\w$]+)?",
    re.MULTILINE,
)
EXPORT_DEFAULT = re.compile(r"^(?P<indent>[ \t]*)export\s+default\s+", re.MULTILINE)
EXPORT_FUNCTION_OR_CLASS = re.compile(
    r"^(?P<indent>[ \t]*)export\s+" + _FUNCTION_OR_CLASS + r"(?P<name>[\w$]+)",
    re.MULTILINE,
)
EXPORT_VARIABLE = re.compile(r"^(?P<indent>[ \t]*)export\s+(?P<kind>const|let|var)\b", re.MULTILINE)

IDENTIFIER = re.compile(r"[A-Za-z_$][\w$]*")

# Statements that name another module, used to discover dependencies
DEPENDENCY_PATTERNS = (IMPORT_STATEMENT, EXPORT_FROM)

# A line ending in one of these continues the statement on the next line
_CONTINUATION = set(",=+-*/%?:&|^<>([{.")


# =============================================================================
# Statement Rewriting
# =============================================================================


def _keep_lines(original: str, replacement: str) -> str:
    """Pad replacement with the newlines original spanned."""
    return replacement + "\n" * original.count("\n")


def _parse_specifiers(names: str) -> list[tuple[str, str]]:
    """Parse `a, b as c` into [(imported, local)]."""
    pairs = []
    for part in names.split(","):
        part = part.strip()
        if not part:
            continue
        pieces = part.split()
        if len(pieces) == 3 and pieces[1] == "as":
            pairs.append((pieces[0], pieces[2]))
        elif len(pieces) == 1:
            pairs.append((pieces[0], pieces[0]))
        else:
            raise ValueError(f"Cannot parse specifier {part!r}")
    return pairs


def _drop_export(match: re.Match, prefix: str = "") -> str:
    """Replace the `export [default]` keywords of match, keeping the declaration text."""
    head = match.string[match.start():match.start("kind")]
    return _keep_lines(head, match.group("indent") + prefix) + match.string[match.start("kind"):match.end()]


# =============================================================================
# Declaration Scanning
# =============================================================================


def _skip_string(text: str, start: int) -> int:
    """Index just past the string or template literal opening at start."""
    quote = text[start]
    i = start + 1
    while i < len(text):
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char == quote:
            return i + 1
        if char == "\n" and quote != "`":
            return i
        i += 1
    return len(text)


def _scan(text: str, start: int = 0) -> Iterator[tuple[int, str, int]]:
    """Yield (index, char, bracket depth) for code outside comments.

    A string literal is yielded once, as its opening quote. Brackets are
    reported at the depth of the construct they open or close.
    """
    depth = 0
    i = start
    while i < len(text):
        char = text[i]
        if text.startswith("//", i):
            newline = text.find("\n", i)
            i = len(text) if newline == -1 else newline
            continue
        if text.startswith("/*", i):
            close = text.find("*/", i + 2)
            i = len(text) if close == -1 else close + 2
            continue
        if char in "'\"`":
            yield i, char, depth
            i = _skip_string(text, i)
            continue
        if char in ")]}":
            depth -= 1
        yield i, char, depth
        if char in "([{":
            depth += 1
        i += 1


def _statement_end(code: str, start: int) -> int:
    """Index where the statement running from start ends.

    That is the first top-level `;`, a closing bracket of an enclosing
    block, or a top-level line break that cannot continue the statement.
    """
    last = ""
    for i, char, depth in _scan(code, start):
        if depth < 0 or (depth == 0 and char == ";"):
            return i
        if depth == 0 and char == "\n" and last and last not in _CONTINUATION:
            return i
        if not char.isspace():
            last = char
    return len(code)


def _split_top_level(text: str, separator: str = ",") -> list[str]:
    parts = []
    begin = 0
    for i, char, depth in _scan(text):
        if char == separator and depth == 0:
            parts.append(text[begin:i])
            begin = i + 1
    parts.append(text[begin:])
    return parts


def _before_top_level(text: str, separator: str) -> str:
    """Text up to the first top-level separator, or all of it."""
    return _split_top_level(text, separator)[0]


def binding_names(target: str) -> list[str]:
    """Names bound by a declaration target, destructuring patterns included."""
    target = target.strip()
    if not target:
        return []
    if target[0] in "{[":
        names = []
        for element in _split_top_level(target[1:-1]):
            element = _before_top_level(element, "=").strip()
            if element.startswith("..."):
                element = element[3:]
            elif target[0] == "{":
                parts = _split_top_level(element, ":")
                element = parts[-1] if len(parts) > 1 else element
            names.extend(binding_names(element))
        return names
    match = IDENTIFIER.match(target)
    return [match.group(0)] if match else []


def declared_names(code: str, start: int) -> list[str]:
    """Names declared by the `const`/`let`/`var` declarator list starting at start."""
    declarators = code[start:_statement_end(code, start)]
    names = []
    for declarator in _split_top_level(declarators):
        names.extend(binding_names(_before_top_level(declarator, "=")))
    return names


def find_dependencies(code: str) -> list[str]:
    """Return every module reference named by import/export statements, in order."""
    found: list[tuple[int, str]] = []
    for pattern in DEPENDENCY_PATTERNS:
        found.extend((m.start(), m.group("source")) for m in pattern.finditer(code))
    seen: set[str] = set()
    ordered = []
    for _, source in sorted(found):
        if source not in seen:
            seen.add(source)
            ordered.append(source)
    return ordered


@dataclass
class RewrittenModule:
    code: str
    exports: list[tuple[str, str]] = field(default_factory=list)
    """(exported name, JavaScript expression) pairs exposed as live getters."""


def rewrite_module(code: str, module_id: Callable[[str], int]) -> RewrittenModule:
    """Rewrite ES module statements into registry calls.

    module_id maps a reference in this module to its registry id.
    """
    exports: list[tuple[str, str]] = []
    counter = [0]

    def temp() -> str:
        counter[0] += 1
        return f"__kiln_m{counter[0]}"

    def on_import(match: re.Match) -> str:
        indent = match.group("indent")
        target = f"{REQUIRE}({module_id(match.group('source'))})"
        clause = (match.group("clause") or "").strip()
        if not clause:
            return _keep_lines(match.group(0), f"{indent}{target};")

        declarations = []
        default_part, _, rest = clause.partition("{") if "{" in clause else (clause, "", "")
        named = rest.rstrip().rstrip("}") if rest else ""
        default_part = default_part.strip().rstrip(",").strip()

        module_var = temp()
        declarations.append(f"{module_var} = {target}")
        if default_part.startswith("*"):
            namespace = default_part.split()[-1]
            declarations.append(f"{namespace} = {module_var}")
        else:
            for part in default_part.split(","):
                part = part.strip()
                if not part:
                    continue
                if part.startswith("*"):
                    declarations.append(f"{part.split()[-1]} = {module_var}")
                else:
                    declarations.append(f"{part} = {module_var}.default")
        for imported, local in _parse_specifiers(named):
            declarations.append(f"{local} = {module_var}.{imported}")

        return _keep_lines(match.group(0), f"{indent}var {', '.join(declarations)};")

    def on_export_from(match: re.Match) -> str:
        indent = match.group("indent")
        target = f"{REQUIRE}({module_id(match.group('source'))})"
        if match.group("names") is None and match.group("namespace") is None:
            return _keep_lines(match.group(0), f"{indent}__kiln_export_star(exports, {target});")

        module_var = temp()
        if match.group("namespace") is not None:
            exports.append((match.group("namespace"), module_var))
        else:
            for imported, exported in _parse_specifiers(match.group("names")):
                exports.append((exported, f"{module_var}.{imported}"))
        return _keep_lines(match.group(0), f"{indent}var {module_var} = {target};")

    def on_export_list(match: re.Match) -> str:
        for local, exported in _parse_specifiers(match.group("names")):
            exports.append((exported, local))
        return _keep_lines(match.group(0), match.group("indent"))

    def on_export_default_declaration(match: re.Match) -> str:
        name = match.group("name")
        if name:
            exports.append(("default", name))
            return _drop_export(match)
        return _drop_export(match, prefix="exports.default = ")

    def on_export_default(match: re.Match) -> str:
        return _keep_lines(match.group(0), f"{match.group('indent')}exports.default = ")

    def on_export_function_or_class(match: re.Match) -> str:
        name = match.group("name")
        exports.append((name, name))
        return _drop_export(match)

    def on_export_variable(match: re.Match) -> str:
        for name in declared_names(match.string, match.end()):
            exports.append((name, name))
        return _drop_export(match)

    code = IMPORT_STATEMENT.sub(on_import, code)
    code = EXPORT_FROM.sub(on_export_from, code)
    code = EXPORT_LIST.sub(on_export_list, code)
    code = EXPORT_DEFAULT_DECLARATION.sub(on_export_default_declaration, code)
    code = EXPORT_DEFAULT.sub(on_export_default, code)
    code = EXPORT_FUNCTION_OR_CLASS.sub(on_export_function_or_class, code)
    code = EXPORT_VARIABLE.sub(on_export_variable, code)
    return RewrittenModule(code=code, exports=exports)


# =============================================================================
# Bundler
# =============================================================================


@dataclass
class _Module:
    id: int
    path: Path
    original: str
    code: str = ""
    map: Optional[SourceMap] = None
    dependencies: dict[str, int] = field(default_factory=dict)


class ModuleGraphBundler:
    """Bundles an entry module into a self-executing script."""

    def bundle(self, entry: str, stages: Sequence[Stage], output: Path) -> BundleResult:
        modules: dict[Path, _Module] = {}

        entry_path = self._resolve(entry, None, stages)
        if entry_path is None:
            raise BundleError(entry, "Could not resolve entry module")

        self._load(entry_path, entry, stages, modules)
        ordered = sorted(modules.values(), key=lambda m: m.id)

        code, bundle_map = self._render(ordered)
        module_maps = {str(m.path): m.map for m in ordered if m.map is not None}
        if module_maps:
            bundle_map = trace(bundle_map, module_maps.get)

        for stage in stages:
            result = stage.transform_bundle(code)
            if result is None:
                continue
            code = result.code
            if result.map is not None:
                bundle_map = compose(result.map, bundle_map)

        bundle_map = self._relative_sources(bundle_map, output)
        replace_file(output, f"{code.rstrip()}\n{source_map_comment(bundle_map)}\n")
        return BundleResult(path=output, modules=[m.path for m in ordered], map=bundle_map)

    def _resolve(self, reference: str, importer: Optional[Path], stages: Sequence[Stage]) -> Optional[Path]:
        for stage in stages:
            resolved = stage.resolve_id(reference, importer)
            if resolved is not None:
                return resolved
        return None

    def _load(self, path: Path, entry: str, stages: Sequence[Stage], modules: dict[Path, _Module]) -> _Module:
        existing = modules.get(path)
        if existing is not None:
            return existing

        try:
            original = path.read_text(encoding="utf-8")
        except OSError as e:
            raise BundleError(entry, f"Could not read {path}: {e.strerror}") from e

        module = _Module(id=len(modules), path=path, original=original)
        modules[path] = module

        code, _ = split_source_map_comment(original)
        for stage in stages:
            result = stage.transform(code, path)
            if result is None:
                continue
            code = result.code
            if result.map is not None:
                module.map = self._chain(result.map, module.map, path)
        module.code = code

        for reference in find_dependencies(code):
            resolved = self._resolve(reference, path, stages)
            if resolved is None:
                raise BundleError(entry, f"Could not resolve '{reference}' from {path}")
            logger.debug("%s: %s -> %s", path, reference, resolved)
            module.dependencies[reference] = self._load(resolved, entry, stages, modules).id

        return module

    @staticmethod
    def _chain(new_map: SourceMap, previous: Optional[SourceMap], path: Path) -> SourceMap:
        """Fold a transform's map onto the module's map so far."""
        new_map = SourceMap(
            sources=[str(path)] * len(new_map.sources),
            mappings=new_map.mappings,
            names=new_map.names,
            sources_content=new_map.sources_content,
        )
        if previous is None:
            return new_map
        return compose(new_map, previous)

    def _render(self, modules: list[_Module]) -> tuple[str, SourceMap]:
        lines = RUNTIME_PRELUDE.split("\n")
        mappings: list[list[Segment]] = [[] for _ in lines]

        for source_index, module in enumerate(modules):
            rewritten = rewrite_module(module.code, module.dependencies.__getitem__)
            header = f"__kiln_modules[{module.id}] = function (exports, {REQUIRE}) {{"
            if rewritten.exports:
                getters = ", ".join(
                    f"{_js_key(name)}: function () {{ return {expression}; }}"
                    for name, expression in rewritten.exports
                )
                header += f" __kiln_export(exports, {{ {getters} }});"
            lines.append(header)
            mappings.append([])

            for line_number, line in enumerate(rewritten.code.split("\n")):
                lines.append(line)
                mappings.append([(0, source_index, line_number, 0)])

            lines.append("};")
            mappings.append([])

        lines.append(f"{REQUIRE}(0);")
        mappings.append([])
        lines.append("}());")
        mappings.append([])

        bundle_map = SourceMap(
            sources=[str(m.path) for m in modules],
            mappings=mappings,
            sources_content=[m.original for m in modules],
        )
        return "\n".join(lines), bundle_map

    @staticmethod
    def _relative_sources(bundle_map: SourceMap, output: Path) -> SourceMap:
        return SourceMap(
            sources=[Path(os.path.relpath(s, output.parent)).as_posix() for s in bundle_map.sources],
            mappings=bundle_map.mappings,
            names=bundle_map.names,
            sources_content=bundle_map.sources_content,
            file=output.name,
        )


def _js_key(name: str) -> str:
    return name if re.fullmatch(r"[A-Za-z_$][\w$]*", name) else repr(name)
