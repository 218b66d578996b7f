from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class CodeMergeError(Exception):
    """Base exception for errors in the code_merge package."""


@dataclass(frozen=True)
class ProjectRootNotFoundError(CodeMergeError):
    """Raised when the configured project root does not exist."""

    folder: Path
    message: str = "The project root directory does not exist."


@dataclass(frozen=True)
class ConfigurationError(CodeMergeError):
    """Raised when a configuration file cannot be read or validated."""

    source: Path
    message: str


@dataclass(frozen=True)
class EmbeddingApiError(CodeMergeError):
    """Raised when the embeddings API call fails or answers with an error."""

    message: str
    status: int | None = None
    body: str = ""


@dataclass(frozen=True)
class EmbeddingsNotInitializedError(CodeMergeError):
    """Raised when a search is attempted before embeddings are loaded."""

    message: str = "Embeddings are not initialized, call initialize() first."


@dataclass(frozen=True)
class MergedFileNotFoundError(CodeMergeError):
    """Raised when the merged document to index does not exist."""

    file: Path
    message: str = "The merged document does not exist."
