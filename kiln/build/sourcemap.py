"""
Source maps for kiln.

Revision 3 source maps in decoded form, base64 VLQ mapping codec, map
composition, and the flattener that collapses a chain of maps
(component -> compiled module -> bundle -> minified bundle) into a single
map from the final output to the original sources.
"""

from __future__ import annotations

import base64
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import unquote

from kiln.core.errors import MapMergeError
from kiln.core.utils import replace_file

# A decoded segment: (generated column,) or
# (generated column, source index, original line, original column[, name index])
Segment = tuple[int, ...]

BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
BASE64_INDEX = {char: index for index, char in enumerate(BASE64_CHARS)}

SOURCE_MAP_COMMENT = re.compile(r"^[ \t]*//[#@][ \t]*sourceMappingURL=(\S+)[ \t]*$", re.MULTILINE)

DATA_URL_PREFIX = "data:application/json;charset=utf-8;base64,"


# =============================================================================
# VLQ Codec
# =============================================================================


def vlq_encode(value: int) -> str:
    """Encode one signed integer as base64 VLQ."""
    vlq = ((-value) << 1) | 1 if value < 0 else value << 1
    encoded = []
    while True:
        digit = vlq & 31
        vlq >>= 5
        if vlq:
            digit |= 32
        encoded.append(BASE64_CHARS[digit])
        if not vlq:
            return "".join(encoded)


def vlq_decode(segment: str) -> list[int]:
    """Decode every signed integer in a base64 VLQ segment."""
    values: list[int] = []
    shift = 0
    value = 0
    for char in segment:
        try:
            digit = BASE64_INDEX[char]
        except KeyError:
            raise ValueError(f"Invalid base64 VLQ character {char!r}") from None
        value += (digit & 31) << shift
        if digit & 32:
            shift += 5
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = 0
        shift = 0

    if shift:
        raise ValueError(f"Truncated base64 VLQ segment {segment!r}")
    return values


def decode_mappings(mappings: str) -> list[list[Segment]]:
    """Decode a `mappings` string into absolute segments per generated line."""
    lines: list[list[Segment]] = []
    source = line = column = name = 0

    for encoded_line in mappings.split(";"):
        segments: list[Segment] = []
        generated_column = 0
        for encoded in encoded_line.split(","):
            if not encoded:
                continue
            fields = vlq_decode(encoded)
            generated_column += fields[0]
            if len(fields) == 1:
                segments.append((generated_column,))
                continue
            if len(fields) not in (4, 5):
                raise ValueError(f"Segment {encoded!r} has {len(fields)} fields")
            source += fields[1]
            line += fields[2]
            column += fields[3]
            if len(fields) == 5:
                name += fields[4]
                segments.append((generated_column, source, line, column, name))
            else:
                segments.append((generated_column, source, line, column))
        lines.append(segments)

    return lines


def encode_mappings(lines: list[list[Segment]]) -> str:
    """Encode absolute segments back into a `mappings` string."""
    encoded_lines = []
    source = line = column = name = 0

    for segments in lines:
        encoded_segments = []
        generated_column = 0
        for segment in sorted(segments, key=lambda s: s[0]):
            parts = [vlq_encode(segment[0] - generated_column)]
            generated_column = segment[0]
            if len(segment) >= 4:
                parts.append(vlq_encode(segment[1] - source))
                parts.append(vlq_encode(segment[2] - line))
                parts.append(vlq_encode(segment[3] - column))
                source, line, column = segment[1], segment[2], segment[3]
                if len(segment) == 5:
                    parts.append(vlq_encode(segment[4] - name))
                    name = segment[4]
            encoded_segments.append("".join(parts))
        encoded_lines.append(",".join(encoded_segments))

    return ";".join(encoded_lines)


# =============================================================================
# Source Map
# =============================================================================


@dataclass
class SourceMap:
    """A decoded revision 3 source map."""

    sources: list[str]
    mappings: list[list[Segment]]
    names: list[str] = field(default_factory=list)
    sources_content: list[Optional[str]] = field(default_factory=list)
    file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceMap":
        if data.get("version", 3) != 3:
            raise ValueError(f"Unsupported source map version {data.get('version')}")
        if "sections" in data:
            raise ValueError("Indexed source maps are not supported")

        source_root = data.get("sourceRoot") or ""
        sources = [
            (f"{source_root.rstrip('/')}/{s}" if source_root else s)
            for s in data.get("sources", [])
        ]
        return cls(
            sources=sources,
            mappings=decode_mappings(data.get("mappings", "")),
            names=list(data.get("names", [])),
            sources_content=list(data.get("sourcesContent") or []),
            file=data.get("file"),
        )

    @classmethod
    def from_json(cls, text: str) -> "SourceMap":
        return cls.from_dict(json.loads(text))

    @classmethod
    def identity(
        cls,
        source: str,
        code: str,
        content: Optional[str] = None,
        line_offset: int = 0,
    ) -> "SourceMap":
        """Map every line of code to the same-numbered line of source.

        line_offset shifts the original line, for code extracted from the
        middle of a larger file.
        """
        line_count = code.count("\n") + 1
        return cls(
            sources=[source],
            mappings=[[(0, 0, index + line_offset, 0)] for index in range(line_count)],
            sources_content=[content],
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": 3,
            "sources": list(self.sources),
            "names": list(self.names),
            "mappings": encode_mappings(self.mappings),
        }
        if self.file is not None:
            data["file"] = self.file
        if any(content is not None for content in self.sources_content):
            data["sourcesContent"] = list(self.sources_content)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def to_url(self) -> str:
        """Return the map as a base64 data URL."""
        payload = base64.b64encode(self.to_json().encode("utf-8")).decode("ascii")
        return f"{DATA_URL_PREFIX}{payload}"

    def content_of(self, index: int) -> Optional[str]:
        if index < len(self.sources_content):
            return self.sources_content[index]
        return None

    def original_position(self, line: int, column: int) -> Optional[tuple[int, int, int, Optional[int]]]:
        """Look up (source index, line, column, name index) for a generated position.

        Uses the closest mapped segment at or before column. A column left
        of every segment on the line falls back to the line's first mapped
        segment.
        """
        if line < 0 or line >= len(self.mappings):
            return None

        best: Optional[Segment] = None
        first: Optional[Segment] = None
        for segment in self.mappings[line]:
            if len(segment) < 4:
                continue
            if first is None:
                first = segment
            if segment[0] <= column:
                best = segment
            else:
                break

        chosen = best or first
        if chosen is None:
            return None
        name = chosen[4] if len(chosen) == 5 else None
        return chosen[1], chosen[2], chosen[3], name


# =============================================================================
# Composition
# =============================================================================


class _MapBuilder:
    """Accumulates sources and names while a traced map is assembled."""

    def __init__(self) -> None:
        self.sources: list[str] = []
        self.sources_content: list[Optional[str]] = []
        self.names: list[str] = []
        self._source_index: dict[str, int] = {}
        self._name_index: dict[str, int] = {}

    def source(self, name: str, content: Optional[str]) -> int:
        index = self._source_index.get(name)
        if index is None:
            index = self._source_index[name] = len(self.sources)
            self.sources.append(name)
            self.sources_content.append(content)
        elif content is not None and self.sources_content[index] is None:
            self.sources_content[index] = content
        return index

    def name(self, name: str) -> int:
        index = self._name_index.get(name)
        if index is None:
            index = self._name_index[name] = len(self.names)
            self.names.append(name)
        return index

    def build(self, mappings: list[list[Segment]], file: Optional[str]) -> SourceMap:
        return SourceMap(
            sources=self.sources,
            mappings=mappings,
            names=self.names,
            sources_content=self.sources_content,
            file=file,
        )


def trace(outer: SourceMap, load_inner: Callable[[str], Optional[SourceMap]]) -> SourceMap:
    """Push every segment of outer through the map of its source, if any.

    load_inner returns the map describing a source of outer, or None when
    that source is original. Segments that cannot be traced are dropped.
    """
    builder = _MapBuilder()
    mappings: list[list[Segment]] = []

    for segments in outer.mappings:
        traced_line: list[Segment] = []
        for segment in segments:
            if len(segment) < 4:
                continue
            source = outer.sources[segment[1]]
            outer_name = outer.names[segment[4]] if len(segment) == 5 else None
            inner = load_inner(source)

            if inner is None:
                index = builder.source(source, outer.content_of(segment[1]))
                traced: Segment = (segment[0], index, segment[2], segment[3])
                name = outer_name
            else:
                position = inner.original_position(segment[2], segment[3])
                if position is None:
                    continue
                inner_source, line, column, inner_name = position
                index = builder.source(inner.sources[inner_source], inner.content_of(inner_source))
                traced = (segment[0], index, line, column)
                name = inner.names[inner_name] if inner_name is not None else outer_name

            if name is not None:
                traced = traced + (builder.name(name),)
            traced_line.append(traced)
        mappings.append(traced_line)

    return builder.build(mappings, outer.file)


def compose(outer: SourceMap, inner: SourceMap) -> SourceMap:
    """Compose two maps: outer maps C -> B, inner maps B -> A; result maps C -> A."""
    return trace(outer, lambda _source: inner)


# =============================================================================
# Comments and References
# =============================================================================


def split_source_map_comment(code: str) -> tuple[str, Optional[str]]:
    """Remove the last sourceMappingURL comment from code.

    Returns (code without the comment, the URL or None). The comment's line
    is left empty so line numbers of the remaining code do not move.
    """
    matches = list(SOURCE_MAP_COMMENT.finditer(code))
    if not matches:
        return code, None
    last = matches[-1]
    return code[: last.start()] + code[last.end():], last.group(1)


def source_map_comment(source_map: SourceMap) -> str:
    return f"//# sourceMappingURL={source_map.to_url()}"


def load_map_reference(url: str, base_dir: Path) -> SourceMap:
    """Load the map a sourceMappingURL points at (data URL or file)."""
    if url.startswith("data:"):
        header, _, payload = url.partition(",")
        if header.endswith(";base64"):
            text = base64.b64decode(payload).decode("utf-8")
        else:
            text = unquote(payload)
        return SourceMap.from_json(text)

    return SourceMap.from_json((base_dir / unquote(url)).read_text(encoding="utf-8"))


def _absolute_sources(source_map: SourceMap, base_dir: Path) -> SourceMap:
    sources = [os.path.normpath(base_dir / source) for source in source_map.sources]
    return SourceMap(
        sources=sources,
        mappings=source_map.mappings,
        names=source_map.names,
        sources_content=source_map.sources_content,
        file=source_map.file,
    )


# =============================================================================
# Flattening
# =============================================================================


class SourceMapFlattener:
    """Flatten the map chain of a generated file in place.

    Every source of the file's map that is itself generated (it carries a
    sourceMappingURL comment) is replaced by that file's own sources,
    recursively, so the rewritten map points straight at original sources.
    """

    def flatten(self, path: Path) -> SourceMap:
        try:
            code = path.read_text(encoding="utf-8")
        except OSError as e:
            raise MapMergeError(path, str(e)) from e

        body, url = split_source_map_comment(code)
        if url is None:
            raise MapMergeError(path, "no sourceMappingURL comment")

        try:
            top = _absolute_sources(load_map_reference(url, path.parent), path.parent)
            cache: dict[str, Optional[SourceMap]] = {}
            flat = trace(top, lambda source: self._load_generated(source, cache, set()))
        except (OSError, ValueError) as e:
            raise MapMergeError(path, str(e)) from e

        flat = self._finalize(flat, path)
        replace_file(path, f"{body.rstrip()}\n{source_map_comment(flat)}\n")
        return flat

    def _load_generated(
        self,
        source: str,
        cache: dict[str, Optional[SourceMap]],
        active: set[str],
    ) -> Optional[SourceMap]:
        """Return the flattened map of a generated source, or None if original."""
        if source in cache:
            return cache[source]
        if source in active:
            return None

        path = Path(source)
        if not path.is_file():
            cache[source] = None
            return None

        _, url = split_source_map_comment(path.read_text(encoding="utf-8"))
        if url is None:
            cache[source] = None
            return None

        inner = _absolute_sources(load_map_reference(url, path.parent), path.parent)
        active.add(source)
        flat = trace(inner, lambda nested: self._load_generated(nested, cache, active))
        active.discard(source)
        cache[source] = flat
        return flat

    def _finalize(self, flat: SourceMap, path: Path) -> SourceMap:
        """Make sources relative to the output file and fill missing contents."""
        sources = []
        contents = []
        for index, source in enumerate(flat.sources):
            content = flat.content_of(index)
            if content is None and Path(source).is_file():
                content = Path(source).read_text(encoding="utf-8")
            sources.append(Path(os.path.relpath(source, path.parent)).as_posix())
            contents.append(content)

        return SourceMap(
            sources=sources,
            mappings=flat.mappings,
            names=flat.names,
            sources_content=contents,
            file=path.name,
        )
