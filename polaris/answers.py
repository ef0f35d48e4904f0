# polaris/answers.py
"""
Answer maps are free-form: the field catalog is itself data, so values are only
constrained to be JSON (str / number / bool / null, lists and string-keyed objects
of the same).
"""
from typing import Any, Dict, Iterable, List, TypeAlias, Union

AnswerValue: TypeAlias = Union[str, int, float, bool, None, List["AnswerValue"], Dict[str, "AnswerValue"]]
AnswerMap: TypeAlias = Dict[str, AnswerValue]

# stage key -> (answer column, completion flag column), in collection order
STAGE_COLUMNS: dict[str, tuple[str, str]] = {
    "greeting": ("greeting_data", "greeting_complete"),
    "org": ("org_data", "org_complete"),
    "requirements": ("requirements_data", "requirements_complete"),
    "dynamic": ("dynamic_answers", "dynamic_complete"),
}

STATIC_STAGES = ("greeting", "org", "requirements")


def stage_columns(stage_key: str) -> tuple[str, str]:
    try:
        return STAGE_COLUMNS[stage_key]
    except KeyError:
        raise ValueError(f"Unknown stage '{stage_key}'. Known stages: {list(STAGE_COLUMNS)}") from None


def _check_value(value: Any, path: str) -> AnswerValue:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [_check_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise ValueError(f"Answer object keys must be strings at {path}: {k!r}")
            out[k] = _check_value(v, f"{path}.{k}")
        return out
    raise ValueError(f"Unsupported answer value at {path}: {type(value).__name__}")


def validate_answer_map(answers: Any) -> AnswerMap:
    """Return a plain-JSON copy of `answers`, or raise ValueError."""
    if answers is None:
        return {}
    if not isinstance(answers, dict):
        raise ValueError("Stage answers must be a JSON object")
    return {str(k): _check_value(v, str(k)) for k, v in answers.items()}


def consolidated_answers(job, stages: Iterable[str] = STATIC_STAGES) -> AnswerMap:
    """Merge the maps of the completed stages, later stages winning on collisions."""
    merged: AnswerMap = {}
    for stage in stages:
        data_col, flag_col = stage_columns(stage)
        if getattr(job, flag_col):
            merged.update(getattr(job, data_col) or {})
    return merged


def _is_blank(value: AnswerValue) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def missing_required_fields(fields: Iterable[dict], answers: AnswerMap) -> list[str]:
    """Caller-side completeness check: ids of required fields still blank."""
    return [
        f["id"]
        for f in fields
        if f.get("required") and _is_blank(answers.get(f["id"]))
    ]
