import asyncio

import pytest

from polaris.entities import JobReport
from polaris.errors import InvalidTransition, ProviderSubmissionError
from polaris.provider import ProviderStatus, map_provider_status

from conftest import transient


def _reports(session_factory) -> list:
    session = session_factory()
    try:
        return session.query(JobReport).order_by(JobReport.version).all()
    finally:
        session.close()


async def _wait_for_loop(orchestrator, job_id: str, timeout: float = 5.0) -> None:
    task = orchestrator.polling.get_loop(job_id)
    if task is not None:
        await asyncio.wait_for(task, timeout)


async def _submitted_job(orchestrator, kind: str = "final") -> dict:
    job = await orchestrator.create_job("owner-1", "Leadership program")
    await orchestrator.update_stage_data(job["job_id"], "owner-1", "org", {"industry": "retail"})
    return await orchestrator.submit_for_processing(job["job_id"], "owner-1", kind)


def test_map_provider_status() -> None:
    assert map_provider_status("queued") == "queued"
    assert map_provider_status("running") == "processing"
    assert map_provider_status("succeeded") == "completed"
    assert map_provider_status("failed") == "failed"


def test_submit_writes_handle_and_status_together(orchestrator, provider) -> None:
    async def scenario():
        job = await _submitted_job(orchestrator)
        await orchestrator.polling.stop_all()
        return job

    job = asyncio.run(scenario())
    assert job["status"] == "queued"
    assert job["report_job_id"] == "rj_1"
    assert job["report_job_status"] == "queued"
    assert job["report_job_progress"] == 0
    assert job["submitted_at"] is not None

    request = provider.requests[0]
    assert request.model == "test-report-model"
    assert request.temperature == 0.2
    assert request.max_tokens == 4000
    assert request.metadata == {"starmap_job_id": job["job_id"], "report_type": "final"}
    assert request.idempotency_key == f"{job['job_id']}:final:1"
    assert '"industry": "retail"' in request.prompt


def test_provider_failure_leaves_job_untouched(orchestrator, provider) -> None:
    provider.fail_submit = True

    async def scenario():
        job = await orchestrator.create_job("owner-1")
        with pytest.raises(ProviderSubmissionError):
            await orchestrator.submit_for_processing(job["job_id"], "owner-1")
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "draft"
    assert job["report_job_id"] is None
    assert job["report_job_status"] is None
    assert job["submission_count"] == 0


def test_second_submit_while_in_flight_is_rejected(orchestrator) -> None:
    async def scenario():
        job = await _submitted_job(orchestrator)
        try:
            with pytest.raises(InvalidTransition):
                await orchestrator.submit_for_processing(job["job_id"], "owner-1")
        finally:
            await orchestrator.polling.stop_all()

    asyncio.run(scenario())


def test_poll_loop_completes_final_report(orchestrator, provider, session_factory) -> None:
    provider.script(
        ProviderStatus(status="queued"),
        ProviderStatus(status="running", progress=15),
        ProviderStatus(status="succeeded", progress=100, result="# Final\n\nAll good."),
    )

    async def scenario():
        job = await _submitted_job(orchestrator)
        await _wait_for_loop(orchestrator, job["job_id"])
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "completed"
    assert job["report_job_status"] == "completed"
    assert job["report_job_progress"] == 100
    assert job["final_report"] == "# Final\n\nAll good."
    assert job["completed_at"] is not None
    assert not orchestrator.polling.is_polling(job["job_id"])

    reports = _reports(session_factory)
    assert len(reports) == 1
    assert reports[0].is_current and reports[0].model_used == "test-report-model"


def test_terminal_result_is_applied_once(orchestrator, session_factory) -> None:
    async def scenario():
        job = await _submitted_job(orchestrator)
        await orchestrator.polling.stop_all()
        done = ProviderStatus(status="succeeded", progress=100, result="# Report")
        first = orchestrator.job_store.apply_terminal(job["job_id"], "rj_1", done)
        second = orchestrator.job_store.apply_terminal(job["job_id"], "rj_1", done)
        return first, second, await orchestrator.get_job(job["job_id"], "owner-1")

    first, second, job = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert len(_reports(session_factory)) == 1
    assert job["edits_remaining"] == 3
    assert job["status"] == "completed"


def test_transient_errors_are_swallowed(orchestrator, provider) -> None:
    provider.script(
        transient(),
        transient("timeout"),
        ProviderStatus(status="succeeded", progress=100, result="# Done"),
    )

    async def scenario():
        job = await _submitted_job(orchestrator)
        await _wait_for_loop(orchestrator, job["job_id"])
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "completed"
    assert provider.status_calls == 3


def test_provider_failure_marks_job_failed_with_fallback_error(orchestrator, provider) -> None:
    provider.script(ProviderStatus(status="failed", error=""))

    async def scenario():
        job = await _submitted_job(orchestrator)
        await _wait_for_loop(orchestrator, job["job_id"])
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "failed"
    assert job["report_job_status"] == "failed"
    assert job["report_job_error"] == "Unknown error"
    assert job["final_report"] is None


def test_failed_job_can_be_resubmitted(orchestrator, provider) -> None:
    provider.script(ProviderStatus(status="failed", error="model overloaded"))

    async def scenario():
        job = await _submitted_job(orchestrator)
        await _wait_for_loop(orchestrator, job["job_id"])
        provider.script(ProviderStatus(status="queued"))
        again = await orchestrator.submit_for_processing(job["job_id"], "owner-1")
        await orchestrator.polling.stop_all()
        return again

    job = asyncio.run(scenario())
    assert job["report_job_id"] == "rj_2"
    assert job["report_job_error"] is None
    assert job["submission_count"] == 2
    assert provider.requests[1].idempotency_key.endswith(":final:2")


def test_poll_timeout_marks_job_failed(orchestrator, clock) -> None:
    async def scenario():
        job = await _submitted_job(orchestrator)
        await orchestrator.polling.stop_all()
        clock.advance(901)
        done = await orchestrator.polling.poll(job["job_id"])
        return done, await orchestrator.get_job(job["job_id"], "owner-1")

    done, job = asyncio.run(scenario())
    assert done is True
    assert job["status"] == "failed"
    assert "timed out" in job["report_job_error"]


def test_cancelled_job_ignores_later_results(orchestrator, provider) -> None:
    async def scenario():
        job = await _submitted_job(orchestrator)
        cancelled = await orchestrator.cancel_job(job["job_id"], "owner-1")
        provider.scripts["rj_1"] = [ProviderStatus(status="succeeded", result="# Late")]
        done = await orchestrator.polling.poll(job["job_id"])
        applied = orchestrator.job_store.apply_terminal(
            job["job_id"], "rj_1", ProviderStatus(status="succeeded", result="# Late")
        )
        return cancelled, done, applied, await orchestrator.get_job(job["job_id"], "owner-1")

    cancelled, done, applied, job = asyncio.run(scenario())
    assert cancelled["status"] == "cancelled"
    assert done is True
    assert applied is False
    assert job["status"] == "cancelled"
    assert job["final_report"] is None
    assert not orchestrator.polling.is_polling(job["job_id"])


def test_cancel_without_submission_is_invalid(orchestrator) -> None:
    async def scenario():
        job = await orchestrator.create_job("owner-1")
        await orchestrator.cancel_job(job["job_id"], "owner-1")

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


def test_start_polling_replaces_existing_loop(orchestrator) -> None:
    async def scenario():
        job = await _submitted_job(orchestrator)
        first = orchestrator.polling.get_loop(job["job_id"])
        await orchestrator.polling.start_polling(job["job_id"])
        second = orchestrator.polling.get_loop(job["job_id"])
        active = orchestrator.polling.active_loops()
        await orchestrator.polling.stop_all()
        return first, second, active

    first, second, active = asyncio.run(scenario())
    assert first is not second
    assert first.done()
    assert len(active) == 1
    assert orchestrator.polling.active_loops() == []


def test_preliminary_completion_returns_job_to_draft(orchestrator, provider) -> None:
    provider.script(ProviderStatus(status="succeeded", progress=100, result="Preliminary brief"))

    async def scenario():
        job = await _submitted_job(orchestrator, kind="preliminary")
        await _wait_for_loop(orchestrator, job["job_id"])
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "draft"
    assert job["report_job_status"] == "completed"
    assert job["preliminary_report"] == "Preliminary brief"
    assert job["final_report"] is None
    assert job["completed_at"] is None


def test_check_status_polls_once(orchestrator, provider) -> None:
    provider.script(ProviderStatus(status="running", progress=40))

    async def scenario():
        job = await _submitted_job(orchestrator)
        await orchestrator.polling.stop_all()
        return await orchestrator.check_status(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "processing"
    assert job["report_job_progress"] == 40
    assert job["polling"] is False


def test_degraded_final_report_is_flagged(orchestrator, provider, session_factory) -> None:
    provider.script(ProviderStatus(status="succeeded", progress=100, result="   "))

    async def scenario():
        job = await _submitted_job(orchestrator)
        await _wait_for_loop(orchestrator, job["job_id"])
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "completed"
    assert job["metadata"]["degraded"] is True
    assert "could not be generated" in job["final_report"]
    assert _reports(session_factory)[0].metadata_json["degraded"] is True
