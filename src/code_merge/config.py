from __future__ import annotations

import re
from enum import StrEnum, auto
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field

WILDCARD_EXTENSION = "*"

# Only script-like files are scanned for imports, independently of the
# configured extension allow-list. The order is also the probing order used
# when an import omits its extension.
DEPENDENCY_EXTENSIONS: tuple[str, ...] = ("vue", "js", "ts")

IMPORT_TRIGGERS: tuple[str, ...] = ("import", "require")

VUE_SCRIPT_PATTERN = re.compile(r"<script(?:\s+[^>]*)?>(.*?)</script>", re.DOTALL)

IMPORT_PATTERNS: dict[str, re.Pattern[str]] = {
    # import Default from './m' / import { a, b as c } from './m' / import * as ns from './m'
    # import Default, { a } from './m'
    "es_imports": re.compile(
        r"""import\s+(?:(?:\{[^}]+\}|\*\s+as\s+[^,]+|[\w$]+)\s*,?\s*)*from\s+['"]([^'"]+)['"]""",
    ),
    # import './styles.css' / import type './types'
    "side_effect_imports": re.compile(r"""import\s+(?:type\s+)?['"]([^'"]+)['"]"""),
    "commonjs_require": re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]"""),
    # import('./m') / await require('./m')
    "dynamic_imports": re.compile(r"""(?:import|require)\s*\(\s*['"]([^'"]+)['"]"""),
    "vue_async_component": re.compile(
        r"""defineAsyncComponent\s*\(\s*(?:async\s*)?\(\s*\)\s*=>\s*(?:await\s*)?import\s*\(\s*['"]([^'"]+)['"]""",
    ),
    "vue_lazy_component": re.compile(
        r"""component:\s*(?:async\s*)?\(\s*\)\s*=>\s*(?:await\s*)?import\s*\(\s*['"]([^'"]+)['"]""",
    ),
    "ts_type_imports": re.compile(
        r"""import\s+type\s+(?:\{[^}]+\}|[\w$]+)\s+from\s+['"]([^'"]+)['"]""",
    ),
    # import { type T as Alias, other } from './types'
    "ts_combined_imports": re.compile(
        r"""import\s+\{[^}]*?(?:type\s+[\w$]+\s*(?:as\s+[\w$]+\s*)?)[^}]*?\}\s+from\s+['"]([^'"]+)['"]""",
    ),
    "vue_custom_element": re.compile(
        r"""defineCustomElement\s*\(\s*(?:async\s*)?\(\s*\)\s*=>\s*(?:await\s*)?import\s*\(\s*['"]([^'"]+)['"]""",
    ),
}

# Content filters, listed in precedence order. They are textual, not lexical:
# `//` or `/*` inside string literals is not protected.
STYLE_TAG_PATTERN = r"(?s:<style.*?>.*?</style>)(?:\r?\n)?"
HTML_COMMENTS_PATTERN = r"(?s:<!--.*?-->)"
SINGLE_LINE_COMMENTS_PATTERN = r"(?m:^)\s*//.*?(?:\r?\n|\r)"
MULTI_LINE_COMMENTS_PATTERN = r"/\*[\s\S]*?\*/\s*"
EMPTY_LINES_PATTERN = r"(?:\A[\r\n]*|[\r\n]+)\s*[\r\n]+"

START_MARKER_PREFIX = "// Начало файла ->"
END_MARKER_PREFIX = "// Конец файла ->"
MANIFEST_LINE_TEMPLATE = "{path} (строки {start} - {end})"
MANIFEST_LINE_PATTERN = re.compile(r"^(?P<path>/.+) \((?:строки|lines) (?P<start>\d+) - (?P<end>\d+)\)$")

INSTRUCTIONS_PREAMBLE = (
    "Ниже написано содержание прикреплённого файла, в котором объединён код нескольких файлов проекта. "
    "Для каждого файла указаны начальная и конечная строки в прикреплённом файле:"
)
INSTRUCTIONS_EPILOGUE = (
    "Отвечай как опытный программист, выбирай современные практики. "
    "После прочтения жди вопросов по этому коду, ничего не отвечай."
)

DEFAULT_MAX_DEPENDENCY_DEPTH = 1000
DEFAULT_OUTPUT_FILE = "merged_files.txt"
DEFAULT_FILE_LIST_OUTPUT_FILE = "file_list.txt"


class IndexingStrategy(StrEnum):
    """How the project tree is enumerated when building the file index."""

    PORTABLE_WALK = "portable-walk"
    NATIVE_FIND_COMMAND = "native-find-command"


# Names used by older configuration files.
LEGACY_INDEXING_STRATEGIES: dict[str, IndexingStrategy] = {
    "php": IndexingStrategy.PORTABLE_WALK,
    "walk": IndexingStrategy.PORTABLE_WALK,
    "system": IndexingStrategy.NATIVE_FIND_COMMAND,
    "find": IndexingStrategy.NATIVE_FIND_COMMAND,
}


class MergeState(StrEnum):
    """Lifecycle of a merge session. Transitions are strictly sequential."""

    IDLE = auto()
    INDEXING = auto()
    COLLECTING = auto()
    MERGING = auto()
    WRITING = auto()
    DONE = auto()


class MergedUnit(BaseModel):
    """One file's block in the merged document.

    Attributes:
        rel: Path relative to the project root, POSIX separators.
        display_path: `/<root folder>/<rel>`, as written in the markers and manifest.
        content: Filtered content written between the markers.
        start_line: 1-based line of the first content line in the document.
        end_line: 1-based line of the last content line (inclusive).
    """

    model_config = ConfigDict(frozen=True)

    rel: str = Field(..., description="File path relative to the project root")
    display_path: str = Field(..., description="Path shown in markers and manifest")
    content: str = Field(..., description="Filtered content")
    start_line: int = Field(..., ge=1, description="First content line (1-based)")
    end_line: int = Field(..., ge=1, description="Last content line (1-based, inclusive)")

    @computed_field
    @property
    def line_count(self) -> int:
        """Number of document lines occupied by the content."""
        return self.end_line - self.start_line + 1

    @computed_field
    @property
    def suffix(self) -> str:
        """File extension without the dot, used for code fences."""
        return Path(self.rel).suffix.lstrip(".")
