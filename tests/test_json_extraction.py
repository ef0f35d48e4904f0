import pytest

from polaris.errors import GenerationFormatError
from polaris.json_extraction import extract_json, normalize_json_text
from polaris.question_generator import parse_questions


def test_fenced_block_inside_prose_yields_one_field() -> None:
    raw = 'Here\'s the result:\n```json\n{"questions":[{"id":"a","label":"L","type":"text"}]}\n```'
    fields = parse_questions(raw)
    assert len(fields) == 1
    assert fields[0]["id"] == "a"
    assert fields[0]["kind"] == "text"


def test_no_json_raises_generation_format_error() -> None:
    with pytest.raises(GenerationFormatError) as exc:
        extract_json("I'm sorry, I cannot help with that request.")
    assert exc.value.snippet.startswith("I'm sorry")


def test_empty_response_raises() -> None:
    with pytest.raises(GenerationFormatError):
        extract_json("   ")


def test_snippet_is_bounded() -> None:
    raw = "no json here " * 100
    with pytest.raises(GenerationFormatError) as exc:
        extract_json(raw)
    assert len(exc.value.snippet) <= 200


def test_direct_parse() -> None:
    assert extract_json('{"a": 1}') == {"a": 1}


def test_bare_array_is_accepted() -> None:
    assert extract_json('[{"id": "x"}]') == [{"id": "x"}]


def test_smart_quotes_and_trailing_commas_are_normalized() -> None:
    raw = "{“questions”: [{“id”: “q1”,},],}"
    assert extract_json(raw) == {"questions": [{"id": "q1"}]}


def test_balanced_scan_finds_object_in_prose() -> None:
    raw = 'Sure! The answer is {"questions": [{"id": "b", "note": "use {braces}"}]} as requested.'
    assert extract_json(raw) == {"questions": [{"id": "b", "note": "use {braces}"}]}


def test_balanced_scan_skips_unparseable_block() -> None:
    raw = "first {not json} then {\"ok\": true}"
    assert extract_json(raw) == {"ok": True}


def test_normalize_json_text() -> None:
    assert normalize_json_text('{"a": [1, 2,], }') == '{"a": [1, 2] }'


def test_deeply_nested_input_raises_generation_format_error() -> None:
    with pytest.raises(GenerationFormatError):
        extract_json("[" * 100000)
    with pytest.raises(GenerationFormatError):
        extract_json("Result: " + "[" * 100000 + "]" * 100000)


def test_unclosed_openers_are_scanned_once() -> None:
    with pytest.raises(GenerationFormatError):
        extract_json("{" * 200000)


def test_object_inside_unclosed_brace_is_found() -> None:
    assert extract_json('Result { note: {"ok": true}') == {"ok": True}
