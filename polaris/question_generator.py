# polaris/question_generator.py
import json
import logging
from enum import Enum
from typing import Any, Dict, List

from polaris.answers import AnswerMap
from polaris.base_utils import Utils
from polaris.errors import GenerationFormatError
from polaris.json_extraction import extract_json
from polaris.prompts import DYNAMIC_QUESTIONS_PROMPT, PRELIMINARY_SECTION

logger = logging.getLogger("polaris_backend")

DEFAULT_QUESTION_COUNT = 8
MIN_QUESTION_COUNT = 1
MAX_QUESTION_COUNT = 20


class FieldKind(str, Enum):
    TEXT = "text"
    PARAGRAPH = "paragraph"
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    SLIDER = "slider"
    NUMBER = "number"
    DATE = "date"
    DATE_RANGE = "date_range"
    BOOLEAN = "boolean"


KIND_ALIASES: Dict[str, FieldKind] = {
    "textarea": FieldKind.PARAGRAPH,
    "long_text": FieldKind.PARAGRAPH,
    "single_select": FieldKind.SINGLE_CHOICE,
    "radio": FieldKind.SINGLE_CHOICE,
    "select": FieldKind.SINGLE_CHOICE,
    "multi_select": FieldKind.MULTI_CHOICE,
    "checkbox": FieldKind.MULTI_CHOICE,
    "calendar_date": FieldKind.DATE,
    "calendar_range": FieldKind.DATE_RANGE,
    "toggle": FieldKind.BOOLEAN,
}

CHOICE_KINDS = (FieldKind.SINGLE_CHOICE, FieldKind.MULTI_CHOICE)

# optional descriptor keys copied through when present
_PASSTHROUGH_KEYS = ("help", "placeholder", "default", "step", "unit", "max_length")


def clamp_question_count(count: int | None) -> int:
    if count is None:
        return DEFAULT_QUESTION_COUNT
    return max(MIN_QUESTION_COUNT, min(MAX_QUESTION_COUNT, int(count)))


def normalize_kind(raw_kind: Any) -> FieldKind:
    key = str(raw_kind or "").strip().lower().replace("-", "_")
    if key in KIND_ALIASES:
        return KIND_ALIASES[key]
    try:
        return FieldKind(key)
    except ValueError:
        raise GenerationFormatError(f"Unknown field kind '{raw_kind}'", raw=json.dumps(raw_kind)) from None


def _normalize_options(raw_options: Any, field_id: str) -> List[Dict[str, str]]:
    if not isinstance(raw_options, list):
        return []
    options = []
    for opt in raw_options:
        if isinstance(opt, dict):
            value = opt.get("value", opt.get("label"))
            label = opt.get("label", value)
        else:
            value = label = opt
        if value is None or str(value).strip() == "":
            continue
        options.append({"value": str(value).strip(), "label": str(label).strip()})
    return options


def _as_number(value: Any) -> float | int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


def normalize_field(raw: Any) -> Dict[str, Any]:
    """Map one raw descriptor onto the closed field shape, or raise GenerationFormatError."""
    snippet = json.dumps(raw, default=str)
    if not isinstance(raw, dict):
        raise GenerationFormatError("Question descriptor is not an object", raw=snippet)

    field_id = str(raw.get("id") or "").strip()
    label = str(raw.get("label") or raw.get("question") or "").strip()
    if not field_id:
        raise GenerationFormatError("Question descriptor is missing an id", raw=snippet)
    if not label:
        raise GenerationFormatError(f"Question '{field_id}' is missing a label", raw=snippet)

    kind = normalize_kind(raw.get("kind", raw.get("type")))
    field: Dict[str, Any] = {
        "id": field_id,
        "label": label,
        "kind": kind.value,
        "required": bool(raw.get("required", False)),
    }

    if kind in CHOICE_KINDS:
        options = _normalize_options(raw.get("options"), field_id)
        if not options:
            raise GenerationFormatError(f"Choice question '{field_id}' has no options", raw=snippet)
        field["options"] = options

    if kind in (FieldKind.SLIDER, FieldKind.NUMBER):
        low, high = _as_number(raw.get("min")), _as_number(raw.get("max"))
        if kind == FieldKind.SLIDER and (low is None or high is None or low >= high):
            raise GenerationFormatError(f"Slider question '{field_id}' needs min < max", raw=snippet)
        if low is not None:
            field["min"] = low
        if high is not None:
            field["max"] = high

    if kind in (FieldKind.DATE, FieldKind.DATE_RANGE):
        for src, dst in (("minDate", "min"), ("maxDate", "max"), ("min", "min"), ("max", "max")):
            if raw.get(src) and dst not in field:
                field[dst] = str(raw[src])

    for key in _PASSTHROUGH_KEYS:
        if raw.get(key) is not None:
            field[key] = raw[key]
    if raw.get("maxLength") is not None and "max_length" not in field:
        field["max_length"] = raw["maxLength"]
    return field


def normalize_questions(document: Any) -> List[Dict[str, Any]]:
    if isinstance(document, dict):
        items = document.get("questions")
        if items is None:
            items = document.get("fields")
    else:
        items = document
    if not isinstance(items, list) or not items:
        raise GenerationFormatError("Response has no question list", raw=json.dumps(document, default=str))

    fields = [normalize_field(item) for item in items]
    seen = set()
    for f in fields:
        if f["id"] in seen:
            raise GenerationFormatError(f"Duplicate question id '{f['id']}'", raw=json.dumps(items, default=str))
        seen.add(f["id"])
    return fields


def parse_questions(raw_text: str) -> List[Dict[str, Any]]:
    """Recover + normalize the question list from raw model output."""
    return normalize_questions(extract_json(raw_text))


class DynamicQuestionGenerator(Utils):
    """
    Asks the LLM for follow-up input fields built on top of the static answers.
    The LLM is anything exposing `invoke(prompt) -> str`.
    """

    def __init__(self, llm):
        self.llm = llm

    def build_prompt(
        self,
        answers: AnswerMap,
        *,
        count: int,
        experience_level: str | None = None,
        preliminary_report: str | None = None,
    ) -> str:
        preliminary_section = ""
        if preliminary_report:
            preliminary_section = self.unsafe_string_format(
                PRELIMINARY_SECTION, preliminary_report=preliminary_report
            )
        return self.unsafe_string_format(
            DYNAMIC_QUESTIONS_PROMPT,
            answers_json=json.dumps(answers, indent=2, ensure_ascii=False),
            experience_level=experience_level or "unspecified",
            preliminary_section=preliminary_section,
            count=count,
        )

    def generate(
        self,
        answers: AnswerMap,
        *,
        count: int | None = None,
        experience_level: str | None = None,
        preliminary_report: str | None = None,
    ) -> List[Dict[str, Any]]:
        count = clamp_question_count(count)
        prompt = self.build_prompt(
            answers,
            count=count,
            experience_level=experience_level,
            preliminary_report=preliminary_report,
        )
        raw = self.llm.invoke(prompt)
        try:
            fields = parse_questions(raw)
        except GenerationFormatError as e:
            logger.warning(f"[QUESTIONS] could not use model output: {e}")
            raise
        if len(fields) > count:
            fields = fields[:count]
        logger.info(f"[QUESTIONS] generated {len(fields)} dynamic questions (requested {count})")
        return fields
