from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from code_merge.config import MergedUnit, MergeState
from code_merge.dependencies import DependencyResolver
from code_merge.exceptions import ProjectRootNotFoundError
from code_merge.file_manipulation import (
    ContentCache,
    ExtensionFilter,
    FileIndex,
    FilterOptions,
    IgnoreRules,
    build_file_index,
    filter_content,
    is_regular_file,
    relpath,
)
from code_merge.logging import logger
from code_merge.output_construction import DocumentBuilder, manifest_lines, render_manifest

if TYPE_CHECKING:
    from collections.abc import Sequence

    from code_merge.settings import MergeSettings


class MergeResult(BaseModel):
    """Outcome of one merge run.

    Attributes:
        units: merged files, in document order, with their line spans.
        document: the merged document as written.
        manifest: one `<path> (строки N - M)` line per unit.
        warnings: soft problems met during the run (missing targets, vanished files...).
        output_file: where the document was written.
        file_list_output_file: where the manifest was written.
    """

    model_config = ConfigDict(frozen=True)

    units: list[MergedUnit] = Field(default_factory=list)
    document: str = ""
    manifest: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    output_file: Path
    file_list_output_file: Path


class MergeSession:
    """One merge run: index, collect, merge and write.

    The session owns every cache of the run (file index, file contents,
    dependency results, ignore and extension checks); nothing is shared between
    sessions. A session runs once.
    """

    def __init__(self, settings: MergeSettings) -> None:
        self.settings = settings
        self.root = settings.project_root
        self.state = MergeState.IDLE
        self.warnings: list[str] = []
        self.content_cache = ContentCache()
        self.extension_filter = ExtensionFilter(settings.extensions)
        self.ignore_rules = IgnoreRules(self.root, settings.ignore_files, settings.ignore_directories)
        self.filter_options = FilterOptions.from_settings(settings)
        self.index = FileIndex()
        self.resolver: DependencyResolver | None = None

    def warn(self, message: str, *args: Any) -> None:  # noqa: ANN401
        """Log a soft problem and keep it for the run's result."""
        logger.warning(message, *args)
        self.warnings.append(message % args if args else message)

    def _advance(self, state: MergeState) -> None:
        logger.debug("Merge state %s -> %s", self.state.value, state.value)
        self.state = state

    def build_index(self) -> FileIndex:
        """Build the file index and the dependency resolver over it.

        Raises:
            ProjectRootNotFoundError: if the project root is not a directory

        Returns:
            FileIndex: the project file index
        """
        if not self.root.is_dir():
            raise ProjectRootNotFoundError(folder=self.root)
        self.index = build_file_index(
            self.root,
            self.extension_filter,
            self.ignore_rules,
            self.settings.indexing_strategy,
        )
        self.resolver = DependencyResolver(
            self.root,
            self.index,
            self.ignore_rules,
            self.content_cache,
            scan_root=self.settings.resolved_dependency_scan_root,
            max_depth=self.settings.max_dependency_depth,
        )
        return self.index

    def _accepts(self, path: Path) -> bool:
        return (
            self.extension_filter.accepts(path.name)
            and not self.ignore_rules.is_ignored_file(path)
            and not self.ignore_rules.is_ignored_directory(path)
        )

    def _with_dependencies(self, rel: str) -> list[str]:
        if not self.settings.scan_dependencies or self.resolver is None:
            return [rel]
        return [rel, *self.resolver.scan(rel)]

    def _collect_file(self, path: Path) -> list[str]:
        if not self._accepts(path):
            return []
        return self._with_dependencies(relpath(path, self.root))

    def _collect_directory(self, target: str) -> list[str]:
        prefix = target.strip("/")
        prefix = f"{prefix}/" if prefix else ""
        found: list[str] = []
        for rel in self.index.paths:
            if prefix and not rel.startswith(prefix):
                continue
            if self._accepts(self.root / rel):
                found.extend(self._with_dependencies(rel))
        return found

    def collect_paths(self, scan_targets: Sequence[str] | None = None) -> list[str]:
        """Resolve the scan targets to the ordered list of files to merge.

        Files are included as listed, directories expand to their indexed files,
        and each file is followed by its dependencies when dependency scanning
        is enabled. No targets means the whole project.

        Args:
            scan_targets (Sequence[str] | None): project-relative files or
                directories; defaults to the configured targets

        Returns:
            list[str]: relative paths, first occurrence wins
        """
        targets = list(self.settings.scan_targets if scan_targets is None else scan_targets)
        collected: list[str] = []
        if not targets:
            collected.extend(self._collect_directory(""))
        for target in targets:
            full_path = self.root / target.lstrip("/")
            if full_path.is_file():
                collected.extend(self._collect_file(full_path))
            elif full_path.is_dir():
                collected.extend(self._collect_directory(target))
            else:
                self.warn("Scan target does not exist or is not a file or directory: %s", full_path)
        unique = dict.fromkeys(collected)
        return [rel for rel in unique if not self.ignore_rules.is_ignored(rel)]

    def merge_paths(self, paths: Sequence[str]) -> DocumentBuilder:
        """Read, filter and append each file to a new document.

        Files that vanished or cannot be read are skipped with a warning; the
        line accounting simply continues with the next file.

        Args:
            paths (Sequence[str]): relative paths in output order

        Returns:
            DocumentBuilder: the builder holding the document and the units
        """
        builder = DocumentBuilder(self.settings.root_folder_name)
        for rel in paths:
            full_path = self.root / rel
            if not is_regular_file(full_path):
                self.warn("File does not exist: %s", full_path)
                continue
            try:
                raw = self.content_cache.read(full_path)
            except OSError as e:
                self.warn("Cannot read %s: %s", full_path, e)
                continue
            builder.add(rel, filter_content(raw, self.filter_options))
        return builder

    def write_outputs(self, document: str, manifest: str) -> None:
        """Write the merged document and the manifest to their configured paths."""
        for path, text in ((self.settings.output_file, document), (self.settings.file_list_output_file, manifest)):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

    def merge(self) -> MergeResult:
        """Run the whole pipeline once.

        Raises:
            ProjectRootNotFoundError: if the project root does not exist
            RuntimeError: if the session already ran

        Returns:
            MergeResult: units, document, manifest and warnings of the run
        """
        if self.state is not MergeState.IDLE:
            msg = f"merge session already used (state={self.state.value})"
            raise RuntimeError(msg)

        self._advance(MergeState.INDEXING)
        self.build_index()

        self._advance(MergeState.COLLECTING)
        paths = self.collect_paths()

        self._advance(MergeState.MERGING)
        builder = self.merge_paths(paths)

        self._advance(MergeState.WRITING)
        document = builder.render()
        self.write_outputs(document, render_manifest(builder.units))

        self._advance(MergeState.DONE)
        logger.info(
            "Merged %d files into %s (%d warnings)",
            len(builder.units),
            self.settings.output_file,
            len(self.warnings),
        )
        return MergeResult(
            units=builder.units,
            document=document,
            manifest=manifest_lines(builder.units),
            warnings=list(self.warnings),
            output_file=self.settings.output_file,
            file_list_output_file=self.settings.file_list_output_file,
        )


def merge_project(settings: MergeSettings) -> MergeResult:
    """Run a merge with a fresh session."""
    return MergeSession(settings).merge()
