"""Vector search over the file blocks of a merged document.

Each block between a start and an end marker is one chunk. Chunks are embedded
through an HTTP embeddings API (Voyage by default), cached as JSON next to the
merged document, and ranked against a query by cosine similarity.
"""

from __future__ import annotations

import io
import json
import math
import urllib.error
import urllib.request
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from code_merge.config import END_MARKER_PREFIX, START_MARKER_PREFIX
from code_merge.exceptions import EmbeddingApiError, EmbeddingsNotInitializedError, MergedFileNotFoundError
from code_merge.logging import logger
from code_merge.settings import DEFAULT_EMBEDDINGS_ENDPOINT, DEFAULT_EMBEDDINGS_MODEL

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from code_merge.settings import SearchSettings


class Chunk(BaseModel):
    """One file block of the merged document, markers included."""

    file: str = Field(..., description="Display path taken from the start marker")
    content: str = Field(..., description="Block text, markers included")


class EmbeddedChunk(Chunk):
    """A chunk with its embedding vector."""

    embedding: list[float] = Field(default_factory=list)


class SearchHit(BaseModel):
    """A ranked search result."""

    model_config = ConfigDict(frozen=True)

    file: str
    content: str
    similarity: float


class EmbeddingItem(BaseModel):
    embedding: list[float]
    index: int | None = None


class EmbeddingUsage(BaseModel):
    total_tokens: int = 0
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class EmbeddingResponse(BaseModel):
    """Subset of the embeddings API response that is used."""

    data: list[EmbeddingItem]
    usage: EmbeddingUsage | None = None


_CHUNKS_ADAPTER = TypeAdapter(list[EmbeddedChunk])


def split_merged_document(text: str) -> list[Chunk]:
    """Split a merged document into one chunk per file block.

    A block starts on a line beginning with the start-marker prefix and ends on
    a line beginning with the end-marker prefix. Text outside blocks is
    dropped; an unterminated last block is kept.

    Args:
        text (str): the merged document

    Returns:
        list[Chunk]: the chunks in document order
    """
    chunks: list[Chunk] = []
    buf: io.StringIO | None = None
    current = ""
    for line in text.split("\n"):
        if line.startswith(START_MARKER_PREFIX):
            current = line.removeprefix(START_MARKER_PREFIX).strip()
            buf = io.StringIO()
            buf.write(line + "\n")
        elif buf is not None and line.startswith(END_MARKER_PREFIX):
            buf.write(line + "\n")
            chunks.append(Chunk(file=current, content=buf.getvalue()))
            buf = None
            current = ""
        elif buf is not None:
            buf.write(line + "\n")
    if buf is not None and current:
        chunks.append(Chunk(file=current, content=buf.getvalue()))
    return chunks


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, 0.0 when either has no length."""
    dot = 0.0
    norm1 = 0.0
    norm2 = 0.0
    for a, b in zip(vec1, vec2, strict=False):
        dot += a * b
        norm1 += a * a
        norm2 += b * b
    if norm1 <= 0.0 or norm2 <= 0.0:
        return 0.0
    return dot / (math.sqrt(norm1) * math.sqrt(norm2))


def rank(query_vector: Sequence[float], chunks: Sequence[EmbeddedChunk]) -> list[SearchHit]:
    """Order chunks by cosine similarity to the query, most similar first.

    Ties keep the document order.
    """
    hits = [
        SearchHit(file=c.file, content=c.content, similarity=cosine_similarity(query_vector, c.embedding))
        for c in chunks
    ]
    return sorted(hits, key=lambda h: h.similarity, reverse=True)


class EmbeddingClient:
    """Blocking client for an embeddings HTTP API.

    One request per call, fixed timeout, no retry.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_EMBEDDINGS_MODEL,
        endpoint: str = DEFAULT_EMBEDDINGS_ENDPOINT,
        timeout: float = 120.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self.timeout = timeout
        self.total_tokens_used = 0

    def _post(self, payload: dict[str, object]) -> tuple[int, str]:
        request = urllib.request.Request(  # noqa: S310
            self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:  # noqa: S310
                return response.status, response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if e.fp is not None else ""
            return e.code, body
        except (urllib.error.URLError, TimeoutError) as e:
            msg = f"embeddings request failed: {e}"
            raise EmbeddingApiError(message=msg) from e

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Compute one embedding vector per text.

        Args:
            texts (Sequence[str]): the texts to embed, in order

        Raises:
            EmbeddingApiError: on transport failure, non-2xx status, malformed JSON,
                an `error` payload or a response without `data`

        Returns:
            list[list[float]]: the vectors, in the order of `texts`
        """
        logger.info("Requesting embeddings for %d text(s) with model %s", len(texts), self.model)
        status, body = self._post({"model": self.model, "input": list(texts)})
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            msg = f"malformed JSON from embeddings API: {e}"
            raise EmbeddingApiError(message=msg, status=status, body=body[:1000]) from e
        if isinstance(payload, dict) and payload.get("error"):
            msg = f"embeddings API error: {json.dumps(payload['error'], ensure_ascii=False)}"
            raise EmbeddingApiError(message=msg, status=status, body=body[:1000])
        if not 200 <= status < 300:  # noqa: PLR2004
            msg = f"embeddings API answered HTTP {status}"
            raise EmbeddingApiError(message=msg, status=status, body=body[:1000])
        try:
            parsed = EmbeddingResponse.model_validate(payload)
        except ValidationError as e:
            msg = f"unexpected embeddings API response: {e}"
            raise EmbeddingApiError(message=msg, status=status, body=body[:1000]) from e
        if parsed.usage is not None:
            self.total_tokens_used += parsed.usage.total_tokens
            logger.info("Embedding tokens used: %d", parsed.usage.total_tokens)
        items = parsed.data
        if all(item.index is not None for item in items):
            items = sorted(items, key=lambda item: item.index or 0)
        if len(items) != len(texts):
            msg = f"embeddings API returned {len(items)} vectors for {len(texts)} inputs"
            raise EmbeddingApiError(message=msg, status=status, body=body[:1000])
        return [item.embedding for item in items]


class CodeSearch:
    """Embedding search over one merged document, with a JSON embeddings cache."""

    def __init__(self, client: EmbeddingClient, merged_file: Path, embeddings_file: Path) -> None:
        self.client = client
        self.merged_file = merged_file
        self.embeddings_file = embeddings_file
        self.chunks: list[EmbeddedChunk] = []

    @classmethod
    def from_settings(cls, settings: SearchSettings) -> CodeSearch:
        """Build a search over the files named in the settings."""
        client = EmbeddingClient(
            settings.api_key,
            model=settings.model,
            endpoint=settings.endpoint,
            timeout=settings.timeout,
        )
        return cls(client, settings.merged_file, settings.embeddings_file)

    def initialize(self, *, rebuild: bool = False) -> None:
        """Load cached embeddings, or compute and cache them from the merged document.

        Raises:
            MergedFileNotFoundError: if embeddings must be built and the merged document is missing
            EmbeddingApiError: if the embeddings API call fails
        """
        if not rebuild and self.embeddings_file.is_file():
            try:
                self.chunks = _CHUNKS_ADAPTER.validate_json(self.embeddings_file.read_bytes())
            except (OSError, ValidationError) as e:
                logger.warning("Ignoring unreadable embeddings cache %s: %s", self.embeddings_file, e)
            else:
                if self.chunks:
                    logger.info("Loaded %d embedded chunks from %s", len(self.chunks), self.embeddings_file)
                    return

        if not self.merged_file.is_file():
            raise MergedFileNotFoundError(file=self.merged_file)
        chunks = split_merged_document(self.merged_file.read_text(encoding="utf-8"))
        vectors = self.client.embed([c.content for c in chunks]) if chunks else []
        self.chunks = [
            EmbeddedChunk(file=c.file, content=c.content, embedding=v) for c, v in zip(chunks, vectors, strict=True)
        ]
        self.embeddings_file.parent.mkdir(parents=True, exist_ok=True)
        self.embeddings_file.write_bytes(_CHUNKS_ADAPTER.dump_json(self.chunks))
        logger.info("Saved %d embedded chunks to %s", len(self.chunks), self.embeddings_file)

    def search(self, query: str, top_n: int = 3) -> list[SearchHit]:
        """Return the `top_n` chunks most similar to `query`.

        Raises:
            EmbeddingsNotInitializedError: if `initialize` has not loaded any chunk
            EmbeddingApiError: if embedding the query fails
        """
        if not self.chunks:
            raise EmbeddingsNotInitializedError
        query_vector = self.client.embed([query])[0]
        return rank(query_vector, self.chunks)[:top_n]

    def full_file_content(self, file: str) -> str:
        """Return the whole block of `file` from the merged document, markers included."""
        text = self.merged_file.read_text(encoding="utf-8") if self.merged_file.is_file() else ""
        for chunk in split_merged_document(text):
            if chunk.file == file:
                return chunk.content
        return f"// File not found: {file}"


def build_search_report(search: CodeSearch, hits: Sequence[SearchHit], query: str) -> str:
    """Render search hits as markdown, each with its full file block fenced.

    Args:
        search (CodeSearch): the search the hits come from
        hits (Sequence[SearchHit]): ranked hits
        query (str): the query text

    Returns:
        str: the markdown report
    """
    out = io.StringIO()
    out.write(f"# Search results for: {query}\n\n")
    for i, hit in enumerate(hits, start=1):
        out.write(f"## File #{i} (relevance: {hit.similarity * 100:.2f}%)\n")
        out.write(f"Path: {hit.file}\n\n")
        lang = PurePosixPath(hit.file).suffix.lstrip(".") or "text"
        out.write(f"```{lang}\n{search.full_file_content(hit.file)}\n```\n\n")
    return out.getvalue()
