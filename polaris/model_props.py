# polaris/model_props.py
from typing import Any, Dict, Tuple

# !######################################################################################################
#! MODEL NAMES
# !######################################################################################################

OPENAI_PREFIXES = ("gpt-", "gpt4", "gpt-4", "gpt-5", "o3", "o4")

# GPT-5 / o-series reasoning models reject sampling params
_NO_SAMPLING_PREFIXES = ("gpt-5", "o3", "o4")

# OpenAI Responses presets selected with a "_<preset>" suffix, e.g. DEFAULT_REPORT_MODEL=gpt-5.1_report
MODEL_PRESETS: Dict[str, Dict[str, Dict[str, str]]] = {
    "fast": {"text": {"verbosity": "low"}, "reasoning": {"effort": "low"}},
    "report": {"text": {"verbosity": "high"}, "reasoning": {"effort": "medium"}},
}


def is_openai_model(model_name) -> bool:
    return any((model_name or "").startswith(p) for p in OPENAI_PREFIXES)


def supports_temperature(model_name: str) -> bool:
    return not any(model_name.startswith(p) for p in _NO_SAMPLING_PREFIXES)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """'gpt-5.1_report' -> ('gpt-5.1', {...preset params}); a bare name carries none."""
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed.")

    base, _, preset = raw.partition("_")
    if not preset:
        return base, {}
    try:
        params = MODEL_PRESETS[preset.strip().lower()]
    except KeyError:
        raise ValueError(f"parse_model_name: Unknown preset '{preset}' in '{raw}'. Known: {list(MODEL_PRESETS)}") from None
    return base, {key: dict(value) for key, value in params.items()}


def generation_params(
    model_name: str,
    *,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> Dict[str, Any]:
    """Sampling kwargs for a Responses API call, dropping what the model rejects."""
    params: Dict[str, Any] = {}
    if max_tokens:
        params["max_output_tokens"] = int(max_tokens)
    if temperature is not None and supports_temperature(model_name):
        params["temperature"] = float(temperature)
    return params
