"""Import discovery for script files.

Imports are found with regular expressions over the file text, not with a
parser: commented-out imports are followed and unusual syntax is missed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from code_merge.config import (
    DEFAULT_MAX_DEPENDENCY_DEPTH,
    DEPENDENCY_EXTENSIONS,
    IMPORT_PATTERNS,
    IMPORT_TRIGGERS,
    VUE_SCRIPT_PATTERN,
)
from code_merge.file_manipulation import file_extension, is_regular_file, relpath
from code_merge.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from code_merge.file_manipulation import ContentCache, FileIndex, IgnoreRules


@dataclass(frozen=True)
class _Memo:
    deps: tuple[str, ...]
    # import distance of the farthest dependency, checked against the depth ceiling on reuse
    height: int


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def extract_import_paths(content: str, *, is_vue: bool = False) -> list[str]:
    """Extract the raw module specifiers referenced by import-like statements.

    Args:
        content (str): the file text
        is_vue (bool): only scan the `<script>` blocks of a single-file component

    Returns:
        list[str]: the unique specifiers, in order of first match
    """
    if not any(trigger in content for trigger in IMPORT_TRIGGERS):
        return []
    sources = VUE_SCRIPT_PATTERN.findall(content) if is_vue else [content]
    raw: list[str] = []
    for source in sources:
        for pattern in IMPORT_PATTERNS.values():
            raw.extend(pattern.findall(source))
    return _unique(raw)


class DependencyResolver:
    """Resolve the transitive script dependencies of project files.

    Each file is read and its imports resolved at most once per resolver; the
    import graph is then walked breadth-first over those cached edges, so
    cycles cost no more than acyclic graphs. Transitive results are memoized
    per file unless the depth ceiling cut them short.
    """

    def __init__(
        self,
        root: Path,
        index: FileIndex,
        ignore_rules: IgnoreRules,
        content_cache: ContentCache,
        *,
        scan_root: Path | None = None,
        max_depth: int = DEFAULT_MAX_DEPENDENCY_DEPTH,
    ) -> None:
        self.root = root
        self.scan_root = scan_root or root
        self.index = index
        self.ignore_rules = ignore_rules
        self.content_cache = content_cache
        self.max_depth = max_depth
        self._direct: dict[str, list[str]] = {}
        self._memo: dict[str, _Memo] = {}

    def memoized(self, file: str) -> list[str] | None:
        """Return the memoized dependencies of `file`, or None if not computed."""
        memo = self._memo.get(file)
        return list(memo.deps) if memo is not None else None

    def scan(self, file: str, depth: int = 0) -> list[str]:
        """Return the transitive dependencies of `file`.

        Dependencies are listed by import distance: direct imports first, then
        the files they import, and so on, each file once. Only files within
        `max_depth - depth` imports of `file` are included.

        Never raises: unsupported, missing, ignored or unreadable files yield
        an empty list.

        Args:
            file (str): the file path relative to the project root
            depth (int): the import chain length already followed to reach `file`

        Returns:
            list[str]: the dependencies, never containing `file` itself
        """
        limit = self.max_depth - depth
        if limit <= 0:
            return []

        memo = self._memo.get(file)
        if memo is not None and memo.height <= limit:
            return list(memo.deps)

        seen = {file}
        found: list[str] = []
        frontier = [file]
        height = 0
        truncated = False
        while frontier:
            if height >= limit:
                truncated = any(dep not in seen for f in frontier for dep in self.imports_of(f))
                break
            next_frontier: list[str] = []
            for current in frontier:
                for dep in self.imports_of(current):
                    if dep not in seen:
                        seen.add(dep)
                        found.append(dep)
                        next_frontier.append(dep)
            if next_frontier:
                height += 1
            frontier = next_frontier

        if not truncated:
            self._memo[file] = _Memo(deps=tuple(found), height=height)
        return found

    def imports_of(self, file: str) -> list[str]:
        """Return the resolved direct imports of `file`, computed once per file.

        Args:
            file (str): the file path relative to the project root

        Returns:
            list[str]: the imported project files, empty for non-script,
                missing, ignored or unreadable files
        """
        cached = self._direct.get(file)
        if cached is not None:
            return cached

        direct: list[str] = []
        ext = file_extension(PurePosixPath(file).name)
        full_path = self.root / file
        if (
            ext in DEPENDENCY_EXTENSIONS
            and is_regular_file(full_path)
            and not self.ignore_rules.is_ignored_directory(full_path)
        ):
            try:
                content = self.content_cache.read(full_path)
            except OSError as e:
                logger.warning("Cannot read %s for dependency scan: %s", file, e)
            else:
                direct = [dep for dep in self.direct_dependencies(file, content, is_vue=ext == "vue") if dep != file]
        self._direct[file] = direct
        return direct

    def direct_dependencies(self, file: str, content: str, *, is_vue: bool = False) -> list[str]:
        """Resolve the imports written in one file to project-relative paths.

        Args:
            file (str): the importing file, relative to the project root
            content (str): its text
            is_vue (bool): restrict the scan to `<script>` blocks

        Returns:
            list[str]: the resolved paths, unresolved imports dropped
        """
        resolved: list[str] = []
        for import_path in extract_import_paths(content, is_vue=is_vue):
            target = self.resolve(import_path, file)
            if target is None:
                logger.debug("Unresolved import %r in %s", import_path, file)
                continue
            if target not in resolved:
                resolved.append(target)
        return resolved

    def resolve(self, import_path: str, importer: str) -> str | None:
        """Map an import specifier to an indexed project file.

        Tried in order: relative to the importer (`./`, `../`), relative to the
        dependency scan root, then by basename in the file index (as written,
        then with each dependency extension appended, then with the extension
        replaced).

        Args:
            import_path (str): the specifier as written in the source
            importer (str): the importing file, relative to the project root

        Returns:
            str | None: the relative path of the target, or None when unresolved
        """
        if import_path.startswith(("./", "../")):
            importer_dir = PurePosixPath(importer).parent
            hit = self._indexed_file((self.root / importer_dir / import_path).resolve())
            if hit is not None:
                return hit

        hit = self._indexed_file(self.scan_root / import_path.lstrip("/"))
        if hit is not None:
            return hit

        name = PurePosixPath(import_path).name
        if not name or name in {".", ".."}:
            return None
        candidates = [name, *(f"{name}.{ext}" for ext in DEPENDENCY_EXTENSIONS)]
        stem, dot, _ = name.rpartition(".")
        if dot and stem:
            candidates.extend(f"{stem}.{ext}" for ext in DEPENDENCY_EXTENSIONS)
        for candidate in candidates:
            rel = self.index.lookup(candidate)
            if rel is not None and not self.ignore_rules.is_ignored_directory(rel):
                return rel
        return None

    def _indexed_file(self, candidate: Path) -> str | None:
        if not candidate.exists() or self.ignore_rules.is_ignored_directory(candidate):
            return None
        rel = relpath(candidate, self.root)
        return rel if self.index.has_path(rel) else None
