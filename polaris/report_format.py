# polaris/report_format.py
"""
Turning a provider result into the stored report text.

Final reports are requested as JSON; a recoverable JSON document is rendered to
Markdown, plain Markdown is kept as is, and anything else (empty output, or
something that looks like JSON but cannot be recovered) becomes a placeholder
report flagged with metadata {"degraded": true, "degraded_reason": ...}.
"""
import logging
from typing import Any, Dict, Tuple

from polaris.base_utils import Utils
from polaris.entities import ReportKind
from polaris.errors import GenerationFormatError
from polaris.json_extraction import extract_json

logger = logging.getLogger("polaris_backend")

REPORT_TITLE = "# Needs Analysis Report"

# top-level keys of the structured report
REPORT_KEYS = {"summary", "solution", "learner_analysis", "delivery_plan", "measurement", "budget", "risks", "next_steps"}

DEGRADED_REPORT = """# Needs Analysis Report

> This report could not be generated in full. The generation service returned
> output that could not be read. Your answers are saved; you can request the
> report again.

## Summary

{reason}
"""

_utils = Utils()


def _humanize(key: str) -> str:
    return str(key).replace("_", " ").strip().title()


def _scalar(value: Any) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _render_item(item: Any) -> str:
    if isinstance(item, dict):
        parts = [f"**{_humanize(k)}:** {_render_inline(v)}" for k, v in item.items() if v not in (None, "", [], {})]
        return "; ".join(parts)
    return _scalar(item)


def _render_inline(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(_render_item(v) for v in value)
    if isinstance(value, dict):
        return _render_item(value)
    return _scalar(value)


def _render_section(value: Any, depth: int) -> list[str]:
    lines: list[str] = []
    if isinstance(value, dict):
        for key, sub in value.items():
            if sub in (None, "", [], {}):
                continue
            if isinstance(sub, (dict, list)):
                lines.append("")
                lines.append(f"{'#' * min(depth, 6)} {_humanize(key)}")
                lines.extend(_render_section(sub, depth + 1))
            else:
                lines.append(f"**{_humanize(key)}:** {_scalar(sub)}")
    elif isinstance(value, list):
        for item in value:
            lines.append(f"- {_render_item(item)}")
    else:
        lines.append(_scalar(value))
    return lines


def json_report_to_markdown(document: Dict[str, Any]) -> str:
    lines = [REPORT_TITLE]
    lines.extend(_render_section(document, 2))
    return "\n".join(lines).strip() + "\n"


def _looks_like_json(text: str) -> bool:
    stripped = _utils.clean_triple_backticks(text).strip()
    return stripped.startswith("{") or stripped.startswith("[")


def degraded_report(reason: str) -> Tuple[str, Dict[str, Any]]:
    return (
        _utils.unsafe_string_format(DEGRADED_REPORT, reason=reason),
        {"degraded": True, "degraded_reason": reason},
    )


def render_final_report(raw: str | None) -> Tuple[str, Dict[str, Any]]:
    text = (raw or "").strip()
    if not text:
        return degraded_report("The generation service returned an empty result.")

    if _looks_like_json(text):
        try:
            document = _utils.load_fault_tolerant_json(text)
        except (ValueError, RecursionError) as e:
            logger.warning(f"[REPORT] final report JSON unrecoverable: {e}")
            return degraded_report("The generated report was not valid JSON.")
        if isinstance(document, dict) and document:
            return json_report_to_markdown(document), {"format": "json"}
        return degraded_report("The generated report had no content.")

    # prose wrapped around a JSON report
    try:
        document = extract_json(text)
    except GenerationFormatError:
        document = None
    if isinstance(document, dict) and REPORT_KEYS.intersection(document):
        return json_report_to_markdown(document), {"format": "json"}

    return text, {"format": "markdown"}


def render_report(kind: str, raw: str | None) -> Tuple[str, Dict[str, Any]]:
    """(content, metadata) for a successful provider result of the given report kind."""
    if kind == ReportKind.FINAL.value:
        return render_final_report(raw)
    text = (raw or "").strip()
    if not text:
        return degraded_report("The generation service returned an empty result.")
    return _utils.clean_triple_backticks(text).strip(), {"format": "markdown"}
