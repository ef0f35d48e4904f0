import asyncio

import pytest

from polaris.entities import Job, JobActivity, JobEdit, JobReport
from polaris.errors import DynamicQuestionsLocked, NotFound


QUESTIONS = [
    {"id": "q1", "label": "How many learners?", "type": "number"},
    {"id": "q2", "label": "Preferred format", "type": "single_select", "options": ["Live", "Self-paced"]},
]


def _count(session_factory, model) -> int:
    session = session_factory()
    try:
        return session.query(model).count()
    finally:
        session.close()


def test_create_job_defaults(orchestrator) -> None:
    job = asyncio.run(orchestrator.create_job("owner-1", "Sales enablement", "novice"))
    assert job["status"] == "draft"
    assert job["edits_remaining"] == 3
    assert job["edits_used"] == 0
    assert job["report_job_id"] is None
    assert job["report_job_status"] is None


def test_list_jobs_filters_by_owner_and_status(orchestrator) -> None:
    async def scenario():
        await orchestrator.create_job("owner-1", "a")
        await orchestrator.create_job("owner-1", "b")
        await orchestrator.create_job("owner-2", "c")
        await orchestrator.import_legacy_summary("owner-1", "legacy-1", "# Old report")
        return (
            await orchestrator.list_jobs("owner-1"),
            await orchestrator.list_jobs("owner-1", "completed"),
            await orchestrator.list_jobs("owner-1", limit=1),
        )

    all_jobs, completed, limited = asyncio.run(scenario())
    assert len(all_jobs) == 3
    assert [j["legacy_summary_id"] for j in completed] == ["legacy-1"]
    assert len(limited) == 1


def test_list_jobs_rejects_unknown_status(orchestrator) -> None:
    with pytest.raises(ValueError):
        asyncio.run(orchestrator.list_jobs("owner-1", "archived"))


def test_dynamic_questions_are_immutable(orchestrator) -> None:
    async def scenario():
        job = await orchestrator.create_job("owner-1")
        saved = await orchestrator.save_dynamic_questions(job["job_id"], "owner-1", QUESTIONS)
        try:
            await orchestrator.save_dynamic_questions(job["job_id"], "owner-1", QUESTIONS[:1])
        except DynamicQuestionsLocked:
            locked = True
        else:
            locked = False
        return saved, locked, await orchestrator.get_job(job["job_id"], "owner-1")

    saved, locked, job = asyncio.run(scenario())
    assert locked
    assert [q["id"] for q in job["dynamic_questions"]] == ["q1", "q2"]
    assert job["dynamic_questions"][1]["kind"] == "single_choice"
    assert saved["dynamic_questions"] == job["dynamic_questions"]


def test_generate_dynamic_questions_stores_result(orchestrator, llm) -> None:
    llm.responses.append('{"questions": [{"id": "g1", "label": "Budget range?", "type": "slider", "min": 0, "max": 100}]}')

    async def scenario():
        job = await orchestrator.create_job("owner-1")
        await orchestrator.update_stage_data(job["job_id"], "owner-1", "org", {"industry": "retail"})
        return await orchestrator.generate_dynamic_questions(job["job_id"], "owner-1", count=1)

    job = asyncio.run(scenario())
    assert job["dynamic_questions"][0]["id"] == "g1"
    assert '"industry": "retail"' in llm.prompts[0]
    assert llm.models == ["test-question-model"]


def test_delete_cascades_children(orchestrator, session_factory) -> None:
    async def scenario():
        job = await orchestrator.import_legacy_summary("owner-1", "legacy-9", "# Report")
        await orchestrator.edit_report(job["job_id"], "owner-1", "final", "# Report v2")
        assert _count(session_factory, JobEdit) == 1
        await orchestrator.delete_job(job["job_id"], "owner-1")
        return job["job_id"]

    job_id = asyncio.run(scenario())
    assert _count(session_factory, Job) == 0
    assert _count(session_factory, JobEdit) == 0
    assert _count(session_factory, JobReport) == 0
    assert _count(session_factory, JobActivity) == 0
    with pytest.raises(NotFound):
        asyncio.run(orchestrator.get_job(job_id, "owner-1"))


def test_export_bundles_everything(orchestrator) -> None:
    async def scenario():
        job = await orchestrator.import_legacy_summary("owner-1", "legacy-2", "# First")
        await orchestrator.edit_report(job["job_id"], "owner-1", "final", "# Second")
        return await orchestrator.export_job(job["job_id"], "owner-1")

    bundle = asyncio.run(scenario())
    assert bundle["job"]["current_final_report"] == "# Second"
    assert [r["version"] for r in bundle["reports"]] == [1, 2]
    assert [r["is_current"] for r in bundle["reports"]] == [False, True]
    assert bundle["edits"][0]["original_content"] == "# First"
    assert {a["action"] for a in bundle["activity"]} == {"imported", "report_edited"}


def test_legacy_import_is_idempotent(orchestrator) -> None:
    async def scenario():
        first = await orchestrator.import_legacy_summary(
            "owner-1", "legacy-3", "# Imported", title="Old", answers={"org": {"industry": "health"}}
        )
        second = await orchestrator.import_legacy_summary("owner-1", "legacy-3", "# Something else")
        return first, second

    first, second = asyncio.run(scenario())
    assert first["job_id"] == second["job_id"]
    assert second["final_report"] == "# Imported"
    assert first["status"] == "completed"
    assert first["completed_at"] is not None
    assert first["stages"]["org"] == {"complete": True, "data": {"industry": "health"}, "saved_at": None}


def test_job_stats(orchestrator) -> None:
    async def scenario():
        await orchestrator.create_job("owner-1")
        done = await orchestrator.import_legacy_summary("owner-1", "legacy-4", "# R")
        await orchestrator.edit_report(done["job_id"], "owner-1", "final", "# R2")
        await orchestrator.create_job("owner-2")
        return await orchestrator.job_stats("owner-1")

    stats = asyncio.run(scenario())
    assert stats["total"] == 2
    assert stats["draft"] == 1
    assert stats["completed"] == 1
    assert stats["in_progress"] == 0
    assert stats["failed"] == 0
    assert stats["average_edits_used"] == 0.5
