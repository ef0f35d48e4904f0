# polaris/json_extraction.py
"""
Recovering a JSON document from free-form LLM output.

Strategies run in order (direct parse, fenced code block, brace-balanced
substring scan); each one is retried once on a normalized copy of its candidate
text (smart quotes folded, trailing commas dropped). The first candidate that
parses completely wins. Nothing partial is ever returned: when every strategy is
exhausted a GenerationFormatError carrying a bounded snippet is raised.
"""
import json
import logging
import re
from typing import Any, Callable, Iterator

from polaris.errors import GenerationFormatError

logger = logging.getLogger("polaris_backend")

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")

_SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "„": '"',
    "″": '"',
    "‘": "'",
    "’": "'",
    "′": "'",
}


def normalize_json_text(text: str) -> str:
    for smart, plain in _SMART_QUOTES.items():
        text = text.replace(smart, plain)
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def _direct(text: str) -> Iterator[str]:
    yield text.strip()


def _fenced(text: str) -> Iterator[str]:
    for match in _FENCE_RE.finditer(text):
        yield match.group(1).strip()


def _balanced(text: str) -> Iterator[str]:
    """
    Yield the outermost closed {...} / [...] spans in one pass, tracking string
    literals only inside brackets. An opener that never closes is skipped, but the
    spans closed inside it still count.
    """
    openers: list[int] = []
    spans: list[tuple[int, int]] = []
    in_string = False
    escaped = False
    for j, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch in "{[":
            openers.append(j)
        elif not openers:
            continue
        elif ch == '"':
            in_string = True
        elif ch in "}]":
            spans.append((openers.pop(), j))

    last_end = -1
    for start, end in sorted(spans):
        if start > last_end:
            yield text[start:end + 1]
            last_end = end


STRATEGIES: list[tuple[str, Callable[[str], Iterator[str]]]] = [
    ("direct", _direct),
    ("fenced", _fenced),
    ("balanced", _balanced),
]


def _try_parse(candidate: str) -> tuple[bool, Any]:
    if not candidate:
        return False, None
    try:
        return True, json.loads(candidate)
    except (json.JSONDecodeError, ValueError, RecursionError):
        return False, None


def extract_json(raw: str | None) -> Any:
    """Return the first JSON document recoverable from `raw` or raise GenerationFormatError."""
    text = raw or ""
    if not text.strip():
        raise GenerationFormatError("Model returned an empty response", raw=text)

    for name, strategy in STRATEGIES:
        for candidate in strategy(text):
            ok, data = _try_parse(candidate)
            if not ok:
                ok, data = _try_parse(normalize_json_text(candidate))
            if ok and isinstance(data, (dict, list)):
                logger.debug(f"[JSON] recovered document via '{name}' strategy")
                return data

    raise GenerationFormatError("No parseable JSON document found in model output", raw=text)
