from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from code_merge.dependencies import DependencyResolver, extract_import_paths
from code_merge.file_manipulation import ContentCache, ExtensionFilter, IgnoreRules, build_file_index

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def _project(root: Path, files: dict[str, str]) -> None:
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")


def _resolver(
    root: Path,
    *,
    ignore_directories: list[str] | None = None,
    ignore_files: list[str] | None = None,
    max_depth: int = 1000,
    scan_root: Path | None = None,
) -> DependencyResolver:
    rules = IgnoreRules(root, ignore_files or [], ignore_directories or [])
    index = build_file_index(root, ExtensionFilter(["*"]), rules)
    return DependencyResolver(root, index, rules, ContentCache(), scan_root=scan_root, max_depth=max_depth)


@pytest.mark.unit
def test_extract_import_paths_covers_import_forms() -> None:
    content = "\n".join(
        [
            "import Default from './default'",
            "import { a, b as c } from './named'",
            "import * as ns from './namespace'",
            "import './side-effect.css'",
            "const x = require('./common')",
            "const y = await import('./dynamic')",
            "const Lazy = defineAsyncComponent(() => import('./Lazy.vue'))",
            "const routes = [{ path: '/', component: () => import('./views/Home.vue') }]",
            "import type { Props } from './types'",
            "import { type Ref, ref } from './reactivity'",
            "const El = defineCustomElement(() => import('./El.ce.vue'))",
        ],
    )

    found = extract_import_paths(content)

    assert found == [
        "./default",
        "./named",
        "./namespace",
        "./types",
        "./reactivity",
        "./side-effect.css",
        "./common",
        "./dynamic",
        "./Lazy.vue",
        "./views/Home.vue",
        "./El.ce.vue",
    ]


@pytest.mark.unit
def test_extract_import_paths_without_trigger_words_is_empty() -> None:
    assert extract_import_paths("const a = 1;\nexport default a;\n") == []


@pytest.mark.unit
def test_extract_import_paths_vue_only_reads_script_blocks() -> None:
    content = (
        "<template><p>import x from './not-a-dep'</p></template>\n"
        "<script setup>\nimport Child from './Child.vue'\n</script>\n"
    )

    assert extract_import_paths(content, is_vue=True) == ["./Child.vue"]


@pytest.mark.unit
def test_cycle_terminates_and_excludes_the_file_itself(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "a.js": "import b from './b'\n",
            "b.js": "import c from './c'\n",
            "c.js": "import a from './a'\n",
        },
    )
    resolver = _resolver(root)

    assert resolver.scan("a.js") == ["b.js", "c.js"]
    assert resolver.memoized("a.js") == ["b.js", "c.js"]
    # only the requested file is memoized, not the files met along the way
    assert resolver.memoized("c.js") is None
    assert resolver.scan("c.js") == ["a.js", "b.js"]


@pytest.mark.unit
def test_memoized_result_is_reused(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "main.js": "import { x } from './lib/x.js'\n",
            "lib/x.js": "import y from './y'\n",
            "lib/y.js": "export default 1\n",
        },
    )
    resolver = _resolver(root)

    first = resolver.scan("main.js")
    (root / "lib" / "y.js").write_text("import z from './z'\n", encoding="utf-8")
    second = resolver.scan("main.js")

    assert first == ["lib/x.js", "lib/y.js"]
    assert second == first


@pytest.mark.unit
def test_depth_ceiling_limits_transitive_dependencies(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "a.js": "import b from './b'\n",
            "b.js": "import c from './c'\n",
            "c.js": "import d from './d'\n",
            "d.js": "export default 1\n",
        },
    )

    assert _resolver(root, max_depth=1).scan("a.js") == ["b.js"]
    assert _resolver(root, max_depth=2).scan("a.js") == ["b.js", "c.js"]
    assert _resolver(root, max_depth=0).scan("a.js") == []
    assert _resolver(root).scan("a.js") == ["b.js", "c.js", "d.js"]


@pytest.mark.unit
def test_depth_truncated_result_is_not_reused_at_shallower_depth(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "a.js": "import b from './b'\n",
            "b.js": "import c from './c'\n",
            "c.js": "import d from './d'\n",
            "d.js": "export default 1\n",
        },
    )
    resolver = _resolver(root, max_depth=2)

    assert resolver.scan("b.js", depth=1) == ["c.js"]
    assert resolver.memoized("b.js") is None
    assert resolver.scan("b.js") == ["c.js", "d.js"]
    assert resolver.scan("a.js") == ["b.js", "c.js"]


@pytest.mark.unit
def test_ignored_directory_wins_over_import(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "src/app.js": "import v from '../vendor/lib.js'\nimport u from './util'\n",
            "src/util.js": "export default 1\n",
            "vendor/lib.js": "export default 2\n",
        },
    )
    resolver = _resolver(root, ignore_directories=["vendor"])

    assert resolver.scan("src/app.js") == ["src/util.js"]


@pytest.mark.unit
def test_non_script_files_have_no_dependencies(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(root, {"style.css": "@import './other.css';\n", "other.css": ""})

    assert _resolver(root).scan("style.css") == []
    assert _resolver(root).scan("missing.js") == []


@pytest.mark.unit
def test_resolve_relative_root_relative_and_basename(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "src/components/Button.vue": "",
            "src/utils/format.ts": "",
            "src/store.js": "",
            "src/views/Home.vue": "",
        },
    )
    resolver = _resolver(root, scan_root=root / "src")

    assert resolver.resolve("../components/Button.vue", "src/views/Home.vue") == "src/components/Button.vue"
    assert resolver.resolve("/store.js", "src/views/Home.vue") == "src/store.js"
    assert resolver.resolve("@/utils/format", "src/views/Home.vue") == "src/utils/format.ts"
    assert resolver.resolve("./format.js", "src/views/Home.vue") == "src/utils/format.ts"
    assert resolver.resolve("lodash", "src/views/Home.vue") is None


@pytest.mark.unit
def test_vue_component_dependencies_follow_script_imports(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "App.vue": (
                "<template><Child/></template>\n"
                "<script>\nimport Child from './Child.vue'\nexport default { components: { Child } }\n</script>\n"
            ),
            "Child.vue": "<script setup>\nimport { api } from './api'\n</script>\n",
            "api.ts": "export const api = {}\n",
        },
    )

    assert _resolver(root).scan("App.vue") == ["Child.vue", "api.ts"]


@pytest.mark.unit
def test_dense_cycle_resolves_each_file_once(tmp_path: Path, mocker: MockerFixture) -> None:
    root = tmp_path.resolve()
    names = [f"f{i}" for i in range(10)]
    _project(
        root,
        {
            f"{name}.js": "".join(f"import {other} from './{other}'\n" for other in names if other != name)
            for name in names
        },
    )
    resolver = _resolver(root)
    spy = mocker.spy(resolver, "direct_dependencies")

    results = {name: resolver.scan(f"{name}.js") for name in names}

    assert spy.call_count == len(names)
    for name, deps in results.items():
        assert deps == [f"{other}.js" for other in names if other != name]
        assert resolver.memoized(f"{name}.js") == deps


@pytest.mark.unit
def test_dependencies_are_listed_by_import_distance(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    _project(
        root,
        {
            "a.js": "import b from './b'\nimport c from './c'\n",
            "b.js": "import d from './d'\n",
            "c.js": "import e from './e'\n",
            "d.js": "import f from './f'\n",
            "e.js": "",
            "f.js": "",
        },
    )

    assert _resolver(root).scan("a.js") == ["b.js", "c.js", "d.js", "e.js", "f.js"]
