import pytest

from polaris.llm_client import MaxRetryErrorsException, call_with_retries_sync
from polaris.model_props import generation_params, is_openai_model, parse_model_name


def test_parse_model_name_presets() -> None:
    base, params = parse_model_name("gpt-5.1_report")
    assert base == "gpt-5.1"
    assert params == {"text": {"verbosity": "high"}, "reasoning": {"effort": "medium"}}
    assert parse_model_name("gpt-5.1_FAST")[1]["reasoning"] == {"effort": "low"}
    assert parse_model_name("gpt-4.1") == ("gpt-4.1", {})


def test_parse_model_name_returns_fresh_params() -> None:
    _, params = parse_model_name("gpt-5.1_fast")
    params["text"]["verbosity"] = "high"
    assert parse_model_name("gpt-5.1_fast")[1]["text"] == {"verbosity": "low"}


def test_parse_model_name_rejects_unknown_presets() -> None:
    with pytest.raises(ValueError):
        parse_model_name("gpt-5.1_turbo")
    with pytest.raises(ValueError):
        parse_model_name("gpt-5.1_high_medium")
    with pytest.raises(ValueError):
        parse_model_name("")


def test_generation_params_drop_temperature_for_reasoning_models() -> None:
    assert generation_params("gpt-5.1", temperature=0.2, max_tokens=4000) == {"max_output_tokens": 4000}
    assert generation_params("gpt-4.1", temperature=0.2, max_tokens=None) == {"temperature": 0.2}


def test_model_routing() -> None:
    assert is_openai_model("gpt-5.1_report")
    assert is_openai_model("o3-mini")
    assert not is_openai_model("gemini-2.5-flash-lite")


def test_retries_until_success() -> None:
    attempts = []
    logged = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("boom")
        return "ok"

    assert call_with_retries_sync(flaky, retries=3, log=logged.append) == "ok"
    assert len(attempts) == 3
    assert len(logged) == 2
    assert logged[0].startswith("Attempt 1 failed.")


def test_retries_exhausted() -> None:
    def broken():
        raise RuntimeError("still broken")

    with pytest.raises(MaxRetryErrorsException) as exc:
        call_with_retries_sync(broken, retries=2)
    assert isinstance(exc.value.__cause__, RuntimeError)
