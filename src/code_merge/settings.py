from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from code_merge.config import (
    DEFAULT_FILE_LIST_OUTPUT_FILE,
    DEFAULT_MAX_DEPENDENCY_DEPTH,
    DEFAULT_OUTPUT_FILE,
    LEGACY_INDEXING_STRATEGIES,
    WILDCARD_EXTENSION,
    IndexingStrategy,
)
from code_merge.exceptions import ConfigurationError
from code_merge.logging import logger

ENV_FILE = find_dotenv(usecwd=True)

DEFAULT_EMBEDDINGS_ENDPOINT = "https://api.voyageai.com/v1/embeddings"
DEFAULT_EMBEDDINGS_MODEL = "voyage-code-3"
API_KEY_ENV_VAR = "VOYAGE_API_KEY"


class MergeSettings(BaseModel):
    """Configuration of one merge run.

    Keys are accepted in camelCase (`projectRoot`, `scanTargets`, ...) as found
    in configuration files, or by their snake_case field names.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        arbitrary_types_allowed=True,
    )

    project_root: Path = Field(..., description="Absolute project root directory.")
    dependency_scan_root: Path | None = Field(
        default=None,
        description="Base of root-relative imports. Defaults to the project root.",
    )
    scan_targets: list[str] = Field(
        default_factory=list,
        description="Ordered project-relative files or directories. Empty means the whole project.",
    )
    scan_dependencies: bool = Field(default=True, description="Follow import dependencies.")
    extensions: list[str] = Field(
        default_factory=lambda: [WILDCARD_EXTENSION],
        description="Allowed extensions, '*' matches every file.",
    )
    remove_style_tag: bool = Field(default=False, description="Strip <style> blocks.")
    remove_html_comments: bool = Field(default=False, description="Strip <!-- --> comments.")
    remove_single_line_comments: bool = Field(default=False, description="Strip whole-line // comments.")
    remove_multi_line_comments: bool = Field(default=False, description="Strip /* */ comments.")
    remove_empty_lines: bool = Field(default=False, description="Collapse blank lines.")
    ignore_files: list[str] = Field(default_factory=list, description="Ignored basenames.")
    ignore_directories: list[str] = Field(
        default_factory=list,
        description="Ignored directory prefixes, relative to the project root.",
    )
    output_file: Path = Field(default=Path(DEFAULT_OUTPUT_FILE), description="Merged document path.")
    file_list_output_file: Path = Field(
        default=Path(DEFAULT_FILE_LIST_OUTPUT_FILE),
        description="Manifest path.",
    )
    max_dependency_depth: int = Field(
        default=DEFAULT_MAX_DEPENDENCY_DEPTH,
        ge=0,
        description="Maximum import chain length followed from a scanned file.",
    )
    indexing_strategy: IndexingStrategy = Field(
        default=IndexingStrategy.PORTABLE_WALK,
        description="portable-walk or native-find-command.",
    )
    include_instructions: bool = Field(
        default=True,
        description="Echo the manifest to stdout wrapped in reader instructions.",
    )
    log_file: str = Field(default="", description="Log file path.")

    @field_validator("project_root", mode="after")
    @classmethod
    def _absolute_root(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @field_validator("dependency_scan_root", mode="after")
    @classmethod
    def _absolute_scan_root(cls, value: Path | None) -> Path | None:
        return value.expanduser().resolve() if value is not None else None

    @field_validator("extensions", mode="after")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        out: list[str] = []
        for ext in value:
            e = ext.strip()
            if e != WILDCARD_EXTENSION:
                e = e.lstrip(".")
            if e and e not in out:
                out.append(e)
        return out

    @field_validator("ignore_directories", "ignore_files", "scan_targets", mode="after")
    @classmethod
    def _drop_blank_entries(cls, value: list[str]) -> list[str]:
        return [v.strip() for v in value if v.strip()]

    @field_validator("indexing_strategy", mode="before")
    @classmethod
    def _coerce_indexing_strategy(cls, value: Any) -> IndexingStrategy:  # noqa: ANN401
        if isinstance(value, IndexingStrategy):
            return value
        normalized = str(value or "").strip().lower()
        try:
            return IndexingStrategy(normalized)
        except ValueError:
            pass
        if normalized in LEGACY_INDEXING_STRATEGIES:
            return LEGACY_INDEXING_STRATEGIES[normalized]
        logger.warning(
            "Unknown indexing strategy %r, using %s",
            value,
            IndexingStrategy.PORTABLE_WALK.value,
        )
        return IndexingStrategy.PORTABLE_WALK

    @property
    def root_folder_name(self) -> str:
        """Name of the project root folder, as shown in the markers."""
        return self.project_root.name

    @property
    def resolved_dependency_scan_root(self) -> Path:
        """Base directory for root-relative imports."""
        return self.dependency_scan_root or self.project_root


class SearchSettings(BaseModel):
    """Configuration of the embedding search over a merged document."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    api_key: str = Field(default="", description="Embeddings API key.")
    merged_file: Path = Field(default=Path(DEFAULT_OUTPUT_FILE), description="Merged document to index.")
    embeddings_file: Path = Field(default=Path("code_embeddings.json"), description="Embeddings cache.")
    output: Path = Field(default=Path("search_results.txt"), description="Search report path.")
    model: str = Field(default=DEFAULT_EMBEDDINGS_MODEL, description="Embedding model name.")
    endpoint: str = Field(default=DEFAULT_EMBEDDINGS_ENDPOINT, description="Embeddings endpoint URL.")
    timeout: float = Field(default=120.0, gt=0, description="HTTP timeout in seconds.")
    top_n: int = Field(default=3, ge=1, description="Number of results.")
    rebuild: bool = Field(default=False, description="Recompute embeddings even if cached.")
    query: str = Field(default="", description="Search query.")
    log_file: str = Field(default="", description="Log file path.")


def load_api_key() -> str:
    """Read the embeddings API key from the environment or the nearest `.env` file.

    Returns:
        str: the API key, or an empty string when none is configured
    """
    if ENV_FILE:
        load_dotenv(ENV_FILE, override=False)
    return os.environ.get(API_KEY_ENV_VAR, "")


def load_merge_settings(path: Path, **overrides: Any) -> MergeSettings:  # noqa: ANN401
    """Load merge settings from a YAML (or JSON) file of flat key-value pairs.

    Args:
        path (Path): the configuration file
        **overrides: values taking precedence over the file, by field name;
            None values are ignored

    Raises:
        ConfigurationError: if the file cannot be read, parsed or validated

    Returns:
        MergeSettings: the validated settings
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(source=path, message=str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError(source=path, message="configuration must be a mapping of keys to values")

    merged: dict[str, Any] = {}
    for key, value in data.items():
        merged[str(key)] = value
    for key, value in overrides.items():
        if value is None:
            continue
        # drop the file's spelling of the key so the override wins
        merged.pop(to_camel(key), None)
        merged[key] = value
    try:
        return MergeSettings.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(source=path, message=str(e)) from e
