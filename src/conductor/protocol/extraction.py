"""Heuristic field extraction from raw agent text.

Every function here is pure and tolerant: malformed input yields empty results,
never an exception.
"""

from __future__ import annotations

import re

MIN_SENTENCE_LENGTH = 20
MAX_DESCRIPTION_LENGTH = 500
MAX_LIST_ITEMS = 24

SOURCE_EXTENSIONS = frozenset(
    {
        "py", "pyi", "ts", "tsx", "js", "jsx", "mjs", "cjs", "json", "md", "rst", "toml",
        "yaml", "yml", "ini", "cfg", "txt", "go", "rs", "java", "kt", "rb", "php", "c",
        "h", "cc", "cpp", "hpp", "cs", "swift", "sh", "sql", "html", "css", "scss", "vue",
    }
)  # fmt: skip
PATH_PREFIXES = (
    "src/",
    "tests/",
    "test/",
    "lib/",
    "docs/",
    "app/",
    "scripts/",
    "packages/",
    "./",
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_LIST_ITEM = re.compile(r"^(?:[-*+]|\d+[.)])\s+(.+)$")
_PATH_TOKEN = re.compile(r"[\w./\-]+")
_LABELLED_LINE = re.compile(
    r"^\s*(?:[-*>]\s*)?\**\s*(?P<label>[a-z][a-z ]*?)\s*\**\s*:\s*\**\s*(?P<value>.*?)\s*\**\s*$",
    re.IGNORECASE,
)


def normalize_signal(signal: str) -> str:
    return re.sub(r"[\s\-]+", "_", signal.strip().lower())


def is_garbled(text: str) -> bool:
    return not any(character.isalpha() for character in text)


def split_sentences(text: str) -> list[str]:
    collapsed = " ".join(
        line.strip().lstrip("#>").strip() for line in text.splitlines() if line.strip()
    )
    return [part.strip() for part in _SENTENCE_SPLIT.split(collapsed) if part.strip()]


def labelled_value(text: str, *labels: str) -> str:
    """Return the value of the first ``label: value`` line whose label is in ``labels``."""
    wanted = {label.lower() for label in labels}
    for line in text.splitlines():
        match = _LABELLED_LINE.match(line)
        if match and match.group("label").strip().lower() in wanted and match.group("value"):
            return match.group("value").strip()
    return ""


def labelled_values(text: str, *labels: str) -> list[str]:
    wanted = {label.lower() for label in labels}
    values: list[str] = []
    for line in text.splitlines():
        match = _LABELLED_LINE.match(line)
        if match and match.group("label").strip().lower() in wanted and match.group("value"):
            values.append(match.group("value").strip())
    return values[:MAX_LIST_ITEMS]


def extract_description(text: str) -> str:
    explicit = labelled_value(text, "description", "summary")
    if explicit:
        return explicit[:MAX_DESCRIPTION_LENGTH]
    sentences = split_sentences(text)
    for sentence in sentences:
        if len(sentence) > MIN_SENTENCE_LENGTH:
            return sentence[:MAX_DESCRIPTION_LENGTH]
    return " ".join(sentences)[:MAX_DESCRIPTION_LENGTH]


def _looks_like_path(token: str) -> bool:
    # URLs tokenize as "//host/..." because ":" is not a path character
    if token.startswith("//") or token.startswith(".") and not token.startswith("./"):
        return False
    if any(token.startswith(prefix) and len(token) > len(prefix) for prefix in PATH_PREFIXES):
        return True
    name = token.rsplit("/", 1)[-1]
    stem, dot, extension = name.rpartition(".")
    return bool(dot and stem and extension.lower() in SOURCE_EXTENSIONS)


def extract_files(text: str) -> list[str]:
    files: list[str] = []
    for raw in _PATH_TOKEN.findall(text):
        token = raw.strip(".,:;")
        if raw.startswith("./"):
            token = raw.rstrip(".,:;")
        if token and _looks_like_path(token) and token not in files:
            files.append(token)
    return files[:MAX_LIST_ITEMS * 4]


def extract_steps(text: str) -> list[str]:
    steps: list[str] = []
    for line in text.splitlines():
        match = _LIST_ITEM.match(line.strip())
        if match:
            item = match.group(1).strip()
            if item:
                steps.append(item)
    return steps[:MAX_LIST_ITEMS]


def extract_question(text: str) -> str:
    explicit = labelled_value(text, "question", "clarifying question")
    if explicit:
        return explicit
    sentences = split_sentences(text)
    for sentence in sentences:
        if "?" in sentence:
            return sentence[: sentence.index("?") + 1]
    for sentence in sentences:
        if len(sentence) > MIN_SENTENCE_LENGTH:
            return sentence
    return " ".join(sentences)


def extract_issues(text: str) -> list[str]:
    return labelled_values(text, "issue")


def extract_section(text: str, name: str) -> str:
    pattern = re.compile(
        rf"^#{{1,6}}\s*{re.escape(name)}\s*$\n(?P<body>.*?)(?=^#{{1,6}}\s|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(text)
    return match.group("body").strip() if match else ""
