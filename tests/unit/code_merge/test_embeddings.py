from __future__ import annotations

import io
import json
import urllib.error
from typing import TYPE_CHECKING, Any

import pytest

from code_merge.embeddings import (
    CodeSearch,
    EmbeddedChunk,
    EmbeddingClient,
    build_search_report,
    cosine_similarity,
    rank,
    split_merged_document,
)
from code_merge.exceptions import EmbeddingApiError, EmbeddingsNotInitializedError, MergedFileNotFoundError
from code_merge.output_construction import DocumentBuilder

if TYPE_CHECKING:
    from pathlib import Path
    from unittest.mock import MagicMock

    from pytest_mock import MockerFixture


def _merged_document() -> str:
    builder = DocumentBuilder("app")
    builder.add("src/a.js", "export const a = 1;")
    builder.add("src/b.ts", "export const b: number = 2;")
    return builder.render()


def _mock_urlopen(mocker: MockerFixture, *payloads: dict[str, Any], status: int = 200) -> MagicMock:
    responses = []
    for payload in payloads:
        response = mocker.MagicMock()
        response.status = status
        response.read.return_value = json.dumps(payload).encode("utf-8")
        cm = mocker.MagicMock()
        cm.__enter__.return_value = response
        responses.append(cm)
    return mocker.patch("code_merge.embeddings.urllib.request.urlopen", side_effect=responses)


def _embedding_payload(*vectors: list[float], tokens: int = 5) -> dict[str, Any]:
    return {
        "data": [{"embedding": v, "index": i} for i, v in enumerate(vectors)],
        "usage": {"total_tokens": tokens},
    }


@pytest.mark.unit
def test_split_merged_document_yields_one_chunk_per_file() -> None:
    chunks = split_merged_document("preamble\n" + _merged_document())

    assert [c.file for c in chunks] == ["/app/src/a.js", "/app/src/b.ts"]
    assert "export const a = 1;" in chunks[0].content
    assert chunks[0].content.startswith("// Начало файла -> /app/src/a.js\n")
    assert chunks[0].content.endswith("// Конец файла -> /app/src/a.js\n")


@pytest.mark.unit
def test_split_merged_document_keeps_unterminated_last_block() -> None:
    text = "// Начало файла -> /app/x.js\nconst x = 1;\n"

    chunks = split_merged_document(text)

    assert len(chunks) == 1
    assert chunks[0].file == "/app/x.js"
    assert "const x = 1;" in chunks[0].content


@pytest.mark.unit
def test_cosine_similarity() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


@pytest.mark.unit
def test_rank_orders_by_similarity_and_keeps_ties_stable() -> None:
    chunks = [
        EmbeddedChunk(file="/a", content="a", embedding=[0.0, 1.0]),
        EmbeddedChunk(file="/b", content="b", embedding=[1.0, 0.0]),
        EmbeddedChunk(file="/c", content="c", embedding=[2.0, 0.0]),
    ]

    hits = rank([1.0, 0.0], chunks)

    assert [h.file for h in hits] == ["/b", "/c", "/a"]


@pytest.mark.unit
def test_embedding_client_posts_and_counts_tokens(mocker: MockerFixture) -> None:
    urlopen = _mock_urlopen(mocker, _embedding_payload([0.1, 0.2], [0.3, 0.4], tokens=12))
    client = EmbeddingClient("key", model="voyage-code-3", endpoint="https://example.invalid/v1/embeddings")

    vectors = client.embed(["first", "second"])

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    assert client.total_tokens_used == 12  # noqa: PLR2004
    request = urlopen.call_args.args[0]
    assert request.get_method() == "POST"
    assert request.get_header("Authorization") == "Bearer key"
    assert json.loads(request.data) == {"model": "voyage-code-3", "input": ["first", "second"]}
    assert urlopen.call_args.kwargs["timeout"] == 120.0  # noqa: PLR2004


@pytest.mark.unit
def test_embedding_client_raises_on_error_payload(mocker: MockerFixture) -> None:
    _mock_urlopen(mocker, {"error": {"message": "bad key"}})

    with pytest.raises(EmbeddingApiError) as exc_info:
        EmbeddingClient("key").embed(["x"])

    assert "bad key" in exc_info.value.message


@pytest.mark.unit
def test_embedding_client_raises_on_missing_data(mocker: MockerFixture) -> None:
    _mock_urlopen(mocker, {"object": "list"})

    with pytest.raises(EmbeddingApiError):
        EmbeddingClient("key").embed(["x"])


@pytest.mark.unit
def test_embedding_client_raises_on_http_error(mocker: MockerFixture) -> None:
    error = urllib.error.HTTPError(
        "https://example.invalid",
        500,
        "Internal Server Error",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(b"upstream down"),
    )
    mocker.patch("code_merge.embeddings.urllib.request.urlopen", side_effect=error)

    with pytest.raises(EmbeddingApiError) as exc_info:
        EmbeddingClient("key").embed(["x"])

    assert exc_info.value.status == 500  # noqa: PLR2004
    assert exc_info.value.body == "upstream down"


@pytest.mark.unit
def test_embedding_client_raises_on_transport_error(mocker: MockerFixture) -> None:
    mocker.patch(
        "code_merge.embeddings.urllib.request.urlopen",
        side_effect=urllib.error.URLError("connection refused"),
    )

    with pytest.raises(EmbeddingApiError) as exc_info:
        EmbeddingClient("key").embed(["x"])

    assert exc_info.value.status is None


@pytest.mark.unit
def test_code_search_builds_caches_and_searches(tmp_path: Path, mocker: MockerFixture) -> None:
    merged = tmp_path / "merged_files.txt"
    merged.write_text(_merged_document(), encoding="utf-8")
    cache = tmp_path / "code_embeddings.json"
    _mock_urlopen(
        mocker,
        _embedding_payload([1.0, 0.0], [0.0, 1.0]),
        _embedding_payload([0.1, 0.9]),
    )
    search = CodeSearch(EmbeddingClient("key"), merged, cache)

    search.initialize()
    hits = search.search("typed number", top_n=1)

    assert cache.exists()
    assert [h.file for h in hits] == ["/app/src/b.ts"]
    report = build_search_report(search, hits, "typed number")
    assert report.startswith("# Search results for: typed number")
    assert "```ts\n// Начало файла -> /app/src/b.ts" in report

    reloaded = CodeSearch(EmbeddingClient("key"), merged, cache)
    reloaded.initialize()
    assert [c.file for c in reloaded.chunks] == ["/app/src/a.js", "/app/src/b.ts"]


@pytest.mark.unit
def test_code_search_requires_initialization(tmp_path: Path) -> None:
    search = CodeSearch(EmbeddingClient("key"), tmp_path / "m.txt", tmp_path / "e.json")

    with pytest.raises(EmbeddingsNotInitializedError):
        search.search("anything")
    with pytest.raises(MergedFileNotFoundError):
        search.initialize()


@pytest.mark.unit
def test_full_file_content_of_unknown_file(tmp_path: Path) -> None:
    merged = tmp_path / "merged_files.txt"
    merged.write_text(_merged_document(), encoding="utf-8")
    search = CodeSearch(EmbeddingClient("key"), merged, tmp_path / "e.json")

    assert search.full_file_content("/app/nope.js") == "// File not found: /app/nope.js"


@pytest.mark.unit
def test_embedding_client_raises_on_malformed_json(mocker: MockerFixture) -> None:
    response = mocker.MagicMock()
    response.status = 200
    response.read.return_value = b"<html>gateway timeout</html>"
    cm = mocker.MagicMock()
    cm.__enter__.return_value = response
    mocker.patch("code_merge.embeddings.urllib.request.urlopen", return_value=cm)

    with pytest.raises(EmbeddingApiError) as exc_info:
        EmbeddingClient("key").embed(["x"])

    assert "malformed JSON" in exc_info.value.message
    assert exc_info.value.status == 200  # noqa: PLR2004
    assert exc_info.value.body == "<html>gateway timeout</html>"


@pytest.mark.unit
def test_unreadable_embeddings_cache_is_rebuilt(tmp_path: Path, mocker: MockerFixture) -> None:
    merged = tmp_path / "merged_files.txt"
    merged.write_text(_merged_document(), encoding="utf-8")
    cache = tmp_path / "code_embeddings.json"
    cache.write_text("[]", encoding="utf-8")
    mocker.patch("pathlib.Path.read_bytes", side_effect=PermissionError("denied"))
    urlopen = _mock_urlopen(mocker, _embedding_payload([1.0, 0.0], [0.0, 1.0]))
    search = CodeSearch(EmbeddingClient("key"), merged, cache)

    search.initialize()

    assert urlopen.call_count == 1
    assert [c.file for c in search.chunks] == ["/app/src/a.js", "/app/src/b.ts"]
