import json

from polaris.report_format import json_report_to_markdown, render_final_report, render_report


def test_json_report_renders_to_markdown() -> None:
    raw = json.dumps({
        "summary": "Managers need coaching skills.",
        "delivery_plan": {"format": "blended", "weeks": 6},
        "risks": ["Low attendance", {"risk": "Budget cut", "mitigation": "Phase rollout"}],
    })

    content, metadata = render_final_report(raw)

    assert metadata == {"format": "json"}
    assert content.startswith("# Needs Analysis Report")
    assert "**Summary:** Managers need coaching skills." in content
    assert "## Delivery Plan" in content
    assert "**Weeks:** 6" in content
    assert "- Low attendance" in content
    assert "- **Risk:** Budget cut; **Mitigation:** Phase rollout" in content


def test_fenced_json_with_trailing_comma_is_recovered() -> None:
    raw = '```json\n{"summary": "ok", "next_steps": ["kickoff",],}\n```'
    content, metadata = render_final_report(raw)
    assert metadata == {"format": "json"}
    assert "- kickoff" in content


def test_markdown_is_kept_as_is() -> None:
    raw = "# Report\n\nThe team needs onboarding help."
    assert render_final_report(raw) == (raw, {"format": "markdown"})


def test_empty_result_is_degraded() -> None:
    content, metadata = render_final_report("")
    assert metadata["degraded"] is True
    assert "could not be generated" in content
    assert "empty result" in metadata["degraded_reason"]


def test_json_without_a_report_object_is_degraded() -> None:
    content, metadata = render_final_report("[1, 2")
    assert metadata["degraded"] is True
    assert content.startswith("# Needs Analysis Report")


def test_report_embedded_in_prose_is_extracted() -> None:
    raw = 'Here is your report: {"summary": "Sales reps need product training."} Let me know!'
    content, metadata = render_final_report(raw)
    assert metadata == {"format": "json"}
    assert "Sales reps need product training." in content


def test_prose_with_unrelated_json_stays_markdown() -> None:
    raw = 'Use the config {"debug": true} when testing.'
    assert render_final_report(raw) == (raw, {"format": "markdown"})


def test_preliminary_report_strips_fences() -> None:
    content, metadata = render_report("preliminary", "```markdown\n## Brief\nShort.\n```")
    assert content == "## Brief\nShort."
    assert metadata == {"format": "markdown"}


def test_empty_preliminary_is_degraded() -> None:
    _, metadata = render_report("preliminary", None)
    assert metadata["degraded"] is True


def test_markdown_renderer_skips_empty_values() -> None:
    content = json_report_to_markdown({"summary": "x", "budget": None, "risks": []})
    assert "Budget" not in content
    assert "Risks" not in content


def test_deeply_nested_final_report_is_degraded() -> None:
    content, metadata = render_final_report("[" * 20000)
    assert metadata["degraded"] is True
    assert "could not be generated" in content

    content, metadata = render_final_report("Here it is: " + "{" * 20000)
    assert metadata == {"format": "markdown"}
