"""
code_merge: merge a front-end project into one document for an LLM.

Overview
--------
`merge` walks a project, follows script imports (ES modules, CommonJS,
dynamic imports, Vue async components, TypeScript type imports) and writes:

1) the **merged document**: every selected file between a start and an end
   marker, optionally stripped of style blocks, comments and blank lines;
2) the **manifest**: one `<path> (строки N - M)` line per file, giving the
   line span of its content in the merged document.

`search` embeds the file blocks of a merged document and answers a query with
the most similar files. `size-tree` turns a manifest into a JSON tree of line
counts per folder.

Usage
-----
    code-merge merge --config merge.yaml
    code-merge merge --config merge.yaml --project-root ../app --output out/merged.txt
    code-merge search "where is the login form validated" --top-n 5
    code-merge size-tree --manifest file_list.txt --output size_tree.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from code_merge import __version__
from code_merge.embeddings import CodeSearch, build_search_report
from code_merge.exceptions import (
    ConfigurationError,
    EmbeddingApiError,
    EmbeddingsNotInitializedError,
    MergedFileNotFoundError,
    ProjectRootNotFoundError,
)
from code_merge.logging import logger, setup_logging
from code_merge.merger import MergeSession
from code_merge.output_construction import build_size_tree, parse_manifest, render_console_report
from code_merge.settings import SearchSettings, load_api_key, load_merge_settings

if TYPE_CHECKING:
    from collections.abc import Sequence


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="code-merge",
        description="Merge project files and their imports into one document for LLM consumption.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    merge = sub.add_parser("merge", help="Merge project files into one document.")
    merge.add_argument("--config", type=Path, required=True, help="YAML or JSON configuration file.")
    merge.add_argument("--project-root", type=Path, default=None, help="Override the configured project root.")
    merge.add_argument("--output", type=Path, default=None, help="Override the merged document path.")
    merge.add_argument("--file-list-output", type=Path, default=None, help="Override the manifest path.")
    merge.add_argument("--log-file", type=str, default="", help="Log file path.")

    search = sub.add_parser("search", help="Search a merged document with embeddings.")
    search.add_argument("query", nargs="?", default="", help="Search query; prompted for when omitted.")
    search.add_argument("--file", type=Path, default=Path("merged_files.txt"), help="Merged document.")
    search.add_argument("--output", type=Path, default=Path("search_results.txt"), help="Report path.")
    search.add_argument(
        "--embeddings",
        type=Path,
        default=Path("code_embeddings.json"),
        help="Embeddings cache file.",
    )
    search.add_argument("--model", type=str, default=None, help="Embedding model name.")
    search.add_argument("--endpoint", type=str, default=None, help="Embeddings endpoint URL.")
    search.add_argument("--top-n", type=int, default=3, help="Number of results.")
    search.add_argument("--rebuild", action="store_true", help="Recompute embeddings even if cached.")
    search.add_argument("--log-file", type=str, default="", help="Log file path.")

    tree = sub.add_parser("size-tree", help="Build a line-count tree from a manifest.")
    tree.add_argument("--manifest", type=Path, default=Path("file_list.txt"), help="Manifest file.")
    tree.add_argument("--output", type=Path, default=Path("size_tree.json"), help="JSON output path.")
    tree.add_argument("--log-file", type=str, default="", help="Log file path.")

    return p.parse_args(argv)


def run_merge(args: argparse.Namespace) -> int:
    try:
        settings = load_merge_settings(
            args.config,
            project_root=args.project_root,
            output_file=args.output,
            file_list_output_file=args.file_list_output,
            log_file=args.log_file or None,
        )
    except ConfigurationError as e:
        logger.error("Invalid configuration %s: %s", e.source, e.message)
        return 1
    if settings.log_file and not args.log_file:
        setup_logging(settings.log_file)

    session = MergeSession(settings)
    try:
        result = session.merge()
    except ProjectRootNotFoundError as e:
        logger.error("%s %s", e.message, e.folder)
        return 1
    except OSError as e:
        logger.error("Cannot write merge outputs: %s", e)
        return 1

    print(render_console_report(result.units, include_instructions=settings.include_instructions), end="")
    print(f"Wrote {result.output_file} files={len(result.units)} warnings={len(result.warnings)}")
    return 0


def run_search(args: argparse.Namespace) -> int:
    query = args.query.strip()
    if not query:
        try:
            query = input("Query: ").strip()
        except EOFError:
            query = ""
    if not query:
        logger.error("Empty search query")
        return 1

    settings = SearchSettings(
        api_key=load_api_key(),
        merged_file=args.file,
        embeddings_file=args.embeddings,
        output=args.output,
        top_n=args.top_n,
        rebuild=args.rebuild,
        query=query,
        log_file=args.log_file,
        **{k: v for k, v in (("model", args.model), ("endpoint", args.endpoint)) if v},
    )
    search = CodeSearch.from_settings(settings)
    try:
        search.initialize(rebuild=settings.rebuild)
        hits = search.search(query, settings.top_n)
    except MergedFileNotFoundError as e:
        logger.error("%s %s", e.message, e.file)
        return 1
    except (EmbeddingApiError, EmbeddingsNotInitializedError) as e:
        logger.error("Search failed: %s", e.message)
        return 1

    report = build_search_report(search, hits, query)
    settings.output.parent.mkdir(parents=True, exist_ok=True)
    settings.output.write_text(report, encoding="utf-8")
    for i, hit in enumerate(hits, start=1):
        print(f"{i}. {hit.file} ({hit.similarity * 100:.2f}%)")
    print(f"Wrote {settings.output} results={len(hits)} tokens={search.client.total_tokens_used}")
    return 0


def run_size_tree(args: argparse.Namespace) -> int:
    try:
        lines = args.manifest.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.error("Cannot read manifest %s: %s", args.manifest, e)
        return 1
    tree = build_size_tree(parse_manifest(lines))
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(json.dumps(tree, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    print(f"Wrote {args.output} nodes={len(tree)}")
    return 0


COMMANDS = {
    "merge": run_merge,
    "search": run_search,
    "size-tree": run_size_tree,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    if args.log_file:
        setup_logging(args.log_file)
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
