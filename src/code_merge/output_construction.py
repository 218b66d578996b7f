from __future__ import annotations

import io
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from code_merge.config import (
    END_MARKER_PREFIX,
    INSTRUCTIONS_EPILOGUE,
    INSTRUCTIONS_PREAMBLE,
    MANIFEST_LINE_PATTERN,
    MANIFEST_LINE_TEMPLATE,
    START_MARKER_PREFIX,
    MergedUnit,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence


class ManifestEntry(BaseModel):
    """One manifest line read back from a file list."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Display path, e.g. /project/src/app.js")
    start_line: int = Field(..., ge=0)
    end_line: int = Field(..., ge=0)

    @property
    def size(self) -> int:
        """Number of lines spanned by the entry."""
        return self.end_line - self.start_line + 1


def display_path(root_folder_name: str, rel: str) -> str:
    """Path shown in markers and manifest lines: `/<root folder>/<rel>`."""
    return f"/{root_folder_name}/{rel}"


def start_marker(path: str) -> str:
    """Line opening a file block."""
    return f"{START_MARKER_PREFIX} {path}"


def end_marker(path: str) -> str:
    """Line closing a file block."""
    return f"{END_MARKER_PREFIX} {path}"


def count_lines(content: str) -> int:
    """Number of document lines `content` occupies between two markers.

    An empty content still occupies one (empty) line, and a trailing newline
    adds an empty line before the end marker.
    """
    return content.count("\n") + 1


class DocumentBuilder:
    """Accumulate file blocks and track where each file's content lands.

    Each block is a start marker, the content, an end marker and one blank
    line. Line numbers are 1-based.
    """

    def __init__(self, root_folder_name: str) -> None:
        self.root_folder_name = root_folder_name
        self.units: list[MergedUnit] = []
        self._out = io.StringIO()
        self._next_line = 1

    def add(self, rel: str, content: str) -> MergedUnit:
        """Append one file block and return its recorded span."""
        path = display_path(self.root_folder_name, rel)
        start = self._next_line + 1
        end = start + count_lines(content) - 1
        self._out.write(start_marker(path) + "\n")
        self._out.write(content + "\n")
        self._out.write(end_marker(path) + "\n\n")
        # end marker, then the blank separator line
        self._next_line = end + 3
        unit = MergedUnit(rel=rel, display_path=path, content=content, start_line=start, end_line=end)
        self.units.append(unit)
        return unit

    def render(self) -> str:
        """Return the document with trailing blank lines trimmed."""
        text = self._out.getvalue().rstrip("\n")
        return text + "\n" if text else ""


def manifest_lines(units: Sequence[MergedUnit]) -> list[str]:
    """Format one `<path> (строки N - M)` line per merged unit."""
    return [MANIFEST_LINE_TEMPLATE.format(path=u.display_path, start=u.start_line, end=u.end_line) for u in units]


def render_manifest(units: Sequence[MergedUnit]) -> str:
    """Render the manifest file content."""
    return "".join(line + "\n" for line in manifest_lines(units))


def render_console_report(units: Sequence[MergedUnit], *, include_instructions: bool) -> str:
    """Render the manifest for the terminal, optionally wrapped in reader instructions."""
    out = io.StringIO()
    if include_instructions:
        out.write(INSTRUCTIONS_PREAMBLE + "\n")
    for line in manifest_lines(units):
        out.write(line + "\n")
    if include_instructions:
        out.write("\n" + INSTRUCTIONS_EPILOGUE + "\n\n")
    return out.getvalue()


def parse_manifest(lines: Iterable[str]) -> list[ManifestEntry]:
    """Read manifest lines back, skipping anything that is not a manifest line.

    Args:
        lines (Iterable[str]): manifest lines, with or without line endings

    Returns:
        list[ManifestEntry]: the parsed entries in file order
    """
    entries: list[ManifestEntry] = []
    for raw in lines:
        m = MANIFEST_LINE_PATTERN.match(raw.rstrip("\r\n"))
        if m is None:
            continue
        entries.append(
            ManifestEntry(path=m.group("path"), start_line=int(m.group("start")), end_line=int(m.group("end"))),
        )
    return entries


def build_size_tree(entries: Sequence[ManifestEntry]) -> list[dict[str, Any]]:
    """Aggregate manifest line counts into a folder/file tree.

    Every node is `{name, size, percentage, type}` plus `children` for non-empty
    folders. Siblings are sorted by size, largest first; percentages are
    relative to the whole manifest and rounded to one decimal.

    Args:
        entries (Sequence[ManifestEntry]): parsed manifest entries

    Returns:
        list[dict[str, Any]]: the top-level nodes
    """
    total = sum(e.size for e in entries)
    tree: dict[str, Any] = {}
    for e in entries:
        parts = PurePosixPath(e.path.strip("/")).parts
        cur = tree
        for i, part in enumerate(parts):
            is_file = i == len(parts) - 1
            node = cur.setdefault(part, {"name": part, "size": 0, "children": {}, "type": "file" if is_file else "folder"})
            node["size"] += e.size
            cur = node["children"]

    def walk(level: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for node in level.values():
            item: dict[str, Any] = {
                "name": node["name"],
                "size": node["size"],
                "percentage": round(node["size"] / total * 100, 1) if total else 0.0,
                "type": node["type"],
            }
            if node["children"]:
                item["children"] = walk(node["children"])
            items.append(item)
        return sorted(items, key=lambda it: it["size"], reverse=True)

    return walk(tree)
