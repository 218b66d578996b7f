from __future__ import annotations

import os
import re
import shutil
import subprocess  # noqa: S404
from functools import cache, cached_property
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from code_merge.config import (
    EMPTY_LINES_PATTERN,
    HTML_COMMENTS_PATTERN,
    MULTI_LINE_COMMENTS_PATTERN,
    SINGLE_LINE_COMMENTS_PATTERN,
    STYLE_TAG_PATTERN,
    WILDCARD_EXTENSION,
    IndexingStrategy,
)
from code_merge.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from code_merge.settings import MergeSettings


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return str(path.relative_to(root)).replace("\\", "/")
    except ValueError:
        return str(path)


def file_extension(filename: str) -> str:
    """Extension of a file name without the dot, empty when there is none.

    Args:
        filename (str): a base file name, e.g. `App.vue` or `.env`

    Returns:
        str: the text after the last dot (`vue`, `env`), or "" when the name has no dot
    """
    _, dot, ext = filename.rpartition(".")
    return ext if dot else ""


def is_regular_file(path: Path) -> bool:
    """Check if a path points to an existing regular file."""
    try:
        return path.is_file()
    except OSError:
        return False


class ExtensionFilter:
    """Memoized extension allow-list check.

    The allow-list holds extensions without a leading dot; the `*` token
    accepts every file, including files without an extension.
    """

    def __init__(self, extensions: Iterable[str]) -> None:
        self.extensions = frozenset(extensions)
        self.match_all = WILDCARD_EXTENSION in self.extensions
        self._cache: dict[str, bool] = {}

    def accepts(self, filename: str) -> bool:
        """Return True when `filename` passes the allow-list."""
        cached = self._cache.get(filename)
        if cached is not None:
            return cached
        if self.match_all:
            result = True
        else:
            ext = file_extension(filename)
            result = bool(ext) and ext in self.extensions
        self._cache[filename] = result
        return result


class IgnoreRules:
    """Ignored basenames and ignored directory prefixes for one project root.

    Directory matching is a plain string prefix test on the relative path: an
    ignored `foo` also ignores `foo2/x.js` and a root file named `foo.js`.
    """

    def __init__(self, root: Path, ignore_files: Iterable[str], ignore_directories: Iterable[str]) -> None:
        self.root = root
        self.ignore_files = frozenset(ignore_files)
        self.ignore_prefixes = tuple(d.strip("/") for d in ignore_directories if d.strip("/"))
        self._directory_cache: dict[str, bool] = {}

    def is_ignored_file(self, path: Path | str) -> bool:
        """Return True when the basename of `path` is an ignored file name."""
        return Path(path).name in self.ignore_files

    def is_ignored_directory(self, path: Path | str) -> bool:
        """Return True when `path` lies under one of the ignored directory prefixes.

        Args:
            path (Path | str): an absolute path, or a path relative to the root

        Returns:
            bool: True if the relative path starts with an ignored prefix
        """
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        key = str(p)
        cached = self._directory_cache.get(key)
        if cached is not None:
            return cached
        rel = relpath(p, self.root)
        result = any(rel.startswith(prefix) for prefix in self.ignore_prefixes)
        self._directory_cache[key] = result
        return result

    def is_ignored(self, path: Path | str) -> bool:
        """Return True when either predicate excludes `path`."""
        return self.is_ignored_file(path) or self.is_ignored_directory(path)


class ContentCache:
    """Read-through cache of file contents keyed by absolute path."""

    def __init__(self) -> None:
        self._contents: dict[Path, str] = {}

    def read(self, path: Path) -> str:
        """Read a file as UTF-8 text, decoding errors ignored.

        Raises:
            OSError: if the file cannot be read

        Returns:
            str: the file content
        """
        content = self._contents.get(path)
        if content is None:
            content = path.read_text(encoding="utf-8", errors="ignore")
            self._contents[path] = content
        return content

    def __contains__(self, path: object) -> bool:
        return path in self._contents

    def __len__(self) -> int:
        return len(self._contents)


class FileIndex(BaseModel):
    """Project files reachable by basename or by relative path.

    Attributes:
        entries: basename or relative path -> relative path. A basename shared by
            several files maps to the last one indexed.
        paths: each indexed relative path once, in walk order.
    """

    model_config = ConfigDict(frozen=True)

    entries: dict[str, str] = Field(default_factory=dict)
    paths: tuple[str, ...] = Field(default_factory=tuple)

    @cached_property
    def _path_set(self) -> frozenset[str]:
        return frozenset(self.paths)

    def lookup(self, key: str) -> str | None:
        """Return the relative path indexed under `key`, if any."""
        return self.entries.get(key)

    def has_path(self, rel: str) -> bool:
        """Return True when `rel` is the relative path of an indexed file."""
        return rel in self._path_set

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.paths)


def walk_files(root: Path, ignore_rules: IgnoreRules) -> list[Path]:
    """Walk the directory tree rooted at `root` and return every regular file.

    Ignored directories are pruned. Entries are sorted per directory so that
    repeated walks of an unchanged tree return the same order.

    Args:
        root (Path): the root directory to walk
        ignore_rules (IgnoreRules): rules used to prune ignored directories

    Returns:
        list[Path]: the files found under `root`
    """
    results: list[Path] = []
    for current, dirs, files in os.walk(root):
        base = Path(current)
        dirs[:] = sorted(d for d in dirs if not ignore_rules.is_ignored_directory(base / d))
        for f in sorted(files):
            p = base / f
            if is_regular_file(p):
                results.append(p)
    return results


def find_files(root: Path) -> list[Path]:
    """List regular files under `root` with the system `find` command.

    Raises:
        FileNotFoundError: if `find` is not available
        subprocess.CalledProcessError: if `find` fails

    Returns:
        list[Path]: the files found, sorted by path
    """
    find_bin = shutil.which("find")
    if find_bin is None:
        msg = "find command not available"
        raise FileNotFoundError(msg)
    out = subprocess.run(  # noqa: S603
        [find_bin, str(root), "-type", "f"],
        text=True,
        capture_output=True,
        check=True,
    )
    files: list[Path] = []
    for line in sorted(out.stdout.splitlines()):
        if not line.strip():
            continue
        files.append(Path(line))
    return files


def list_project_files(root: Path, ignore_rules: IgnoreRules, strategy: IndexingStrategy) -> list[Path]:
    """Enumerate project files with the configured strategy.

    The native strategy falls back to the portable walk when `find` is missing
    or fails.

    Args:
        root (Path): the project root
        ignore_rules (IgnoreRules): rules used to prune ignored directories
        strategy (IndexingStrategy): the enumeration strategy

    Returns:
        list[Path]: the absolute paths of the project files
    """
    if strategy is IndexingStrategy.NATIVE_FIND_COMMAND:
        try:
            return find_files(root)
        except (OSError, subprocess.CalledProcessError) as e:
            logger.warning("find failed, falling back to filesystem walk: %s", e)
    return walk_files(root, ignore_rules)


def build_file_index(
    root: Path,
    extension_filter: ExtensionFilter,
    ignore_rules: IgnoreRules,
    strategy: IndexingStrategy = IndexingStrategy.PORTABLE_WALK,
) -> FileIndex:
    """Index every project file that passes the extension and ignored-directory filters.

    Each file is reachable by its basename and by its relative path.

    Args:
        root (Path): the project root
        extension_filter (ExtensionFilter): the extension allow-list
        ignore_rules (IgnoreRules): rules excluding ignored directories
        strategy (IndexingStrategy): how the tree is enumerated

    Returns:
        FileIndex: the populated index (possibly empty)
    """
    entries: dict[str, str] = {}
    paths: list[str] = []
    for f in list_project_files(root, ignore_rules, strategy):
        if not extension_filter.accepts(f.name):
            continue
        if ignore_rules.is_ignored_directory(f):
            continue
        rel = relpath(f, root)
        if rel not in entries:
            paths.append(rel)
        entries[f.name] = rel
        entries[rel] = rel
    logger.info("Indexed %d files under %s", len(paths), root)
    return FileIndex(entries=entries, paths=tuple(paths))


class FilterOptions(BaseModel):
    """Independent content filter toggles."""

    model_config = ConfigDict(frozen=True)

    remove_style_tag: bool = False
    remove_html_comments: bool = False
    remove_single_line_comments: bool = False
    remove_multi_line_comments: bool = False
    remove_empty_lines: bool = False

    @classmethod
    def from_settings(cls, settings: MergeSettings) -> FilterOptions:
        """Pick the filter toggles out of the merge settings."""
        return cls(
            remove_style_tag=settings.remove_style_tag,
            remove_html_comments=settings.remove_html_comments,
            remove_single_line_comments=settings.remove_single_line_comments,
            remove_multi_line_comments=settings.remove_multi_line_comments,
            remove_empty_lines=settings.remove_empty_lines,
        )

    def enabled_patterns(self) -> list[tuple[str, str]]:
        """Return the (group name, pattern) pairs to apply, in precedence order."""
        toggles: Sequence[tuple[bool, str, str]] = (
            (self.remove_style_tag, "style_tag", STYLE_TAG_PATTERN),
            (self.remove_html_comments, "html_comment", HTML_COMMENTS_PATTERN),
            (self.remove_single_line_comments, "line_comment", SINGLE_LINE_COMMENTS_PATTERN),
            (self.remove_multi_line_comments, "block_comment", MULTI_LINE_COMMENTS_PATTERN),
            (self.remove_empty_lines, "empty_lines", EMPTY_LINES_PATTERN),
        )
        return [(name, pattern) for enabled, name, pattern in toggles if enabled]


@cache
def _combined_filter(options: FilterOptions) -> re.Pattern[str] | None:
    patterns = options.enabled_patterns()
    if not patterns:
        return None
    return re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in patterns))


def _replacement(match: re.Match[str]) -> str:
    return "\n" if match.lastgroup == "empty_lines" else ""


def filter_content(content: str, options: FilterOptions) -> str:
    """Strip style blocks, comments and blank lines from a file's content.

    All enabled filters are substituted in one pass, then trailing whitespace
    is trimmed. With no filter enabled the content is returned unchanged,
    without the trailing trim.

    Args:
        content (str): the raw file content
        options (FilterOptions): the enabled filters

    Returns:
        str: the filtered content
    """
    combined = _combined_filter(options)
    if combined is None:
        return content
    return combined.sub(_replacement, content).rstrip()
