import asyncio

import pytest

from polaris.entities import ReportJob
from polaris.errors import NotFound, ProviderSubmissionError
from polaris.provider import GenerationRequest
from polaris.report_jobs import MAX_PROMPT_CHARS, ReportJobService, ReportJobWorker

from conftest import FakeLlm


def _request(**overrides) -> GenerationRequest:
    values = dict(
        prompt="Write the report.",
        model="test-report-model",
        temperature=0.2,
        max_tokens=4000,
        metadata={"starmap_job_id": "j1", "report_type": "final"},
        idempotency_key="j1:final:1",
        owner_id="owner-1",
    )
    values.update(overrides)
    return GenerationRequest(**values)


class RecordingLlm(FakeLlm):
    def __init__(self, responses=None, error: Exception | None = None) -> None:
        super().__init__(responses)
        self.error = error
        self.params = []

    def factory(self, model, temperature=None, max_tokens=None):
        self.params.append((model, temperature, max_tokens))
        return super().factory(model, temperature, max_tokens)

    def invoke(self, prompt: str) -> str:
        if self.error is not None:
            raise self.error
        return super().invoke(prompt)


def test_submit_is_idempotent_per_key(session_factory) -> None:
    service = ReportJobService(session_factory)

    first = service.submit(_request())
    second = service.submit(_request(prompt="A different prompt"))
    third = service.submit(_request(idempotency_key="j1:final:2"))

    assert first.job_id == second.job_id
    assert third.job_id != first.job_id
    assert first.job_id.startswith("job_")
    assert first.status_url == f"/api/report-jobs/{first.job_id}"
    assert service.get(first.job_id)["status"] == "queued"


def test_submit_truncates_long_prompts(session_factory) -> None:
    service = ReportJobService(session_factory)
    submission = service.submit(_request(prompt="x" * (MAX_PROMPT_CHARS + 500), idempotency_key=None))

    session = session_factory()
    try:
        row = session.get(ReportJob, submission.job_id)
        assert len(row.prompt) == MAX_PROMPT_CHARS
        assert row.metadata_json == {"starmap_job_id": "j1", "report_type": "final"}
    finally:
        session.close()


def test_submit_rejects_empty_prompt(session_factory) -> None:
    with pytest.raises(ProviderSubmissionError):
        ReportJobService(session_factory).submit(_request(prompt="  "))


def test_unknown_report_job_is_not_found(session_factory) -> None:
    with pytest.raises(NotFound):
        ReportJobService(session_factory).get_status("job_missing")


def test_worker_claims_and_executes(session_factory) -> None:
    service = ReportJobService(session_factory)
    submission = service.submit(_request())
    llm = RecordingLlm(["# Generated report"])
    worker = ReportJobWorker(session_factory, llm.factory)

    claimed = worker.claim(5)
    assert [j["job_id"] for j in claimed] == [submission.job_id]
    running = service.get(submission.job_id)
    assert running["status"] == "running"
    assert running["percent"] == 5
    assert worker.claim(5) == []

    worker.execute(claimed[0])

    status = service.get_status(submission.job_id)
    assert status.status == "succeeded"
    assert status.progress == 100
    assert status.result == "# Generated report"
    assert llm.params == [("test-report-model", 0.2, 4000)]
    assert llm.prompts == ["Write the report."]


def test_worker_records_failures(session_factory) -> None:
    service = ReportJobService(session_factory)
    submission = service.submit(_request())
    worker = ReportJobWorker(session_factory, RecordingLlm(error=RuntimeError("quota exhausted")).factory)

    worker.execute(worker.claim(1)[0])

    status = service.get_status(submission.job_id)
    assert status.status == "failed"
    assert status.error == "quota exhausted"
    assert status.terminal


def test_worker_fails_empty_model_output(session_factory) -> None:
    service = ReportJobService(session_factory)
    submission = service.submit(_request())
    worker = ReportJobWorker(session_factory, RecordingLlm(["   "]).factory)

    worker.execute(worker.claim(1)[0])

    data = service.get(submission.job_id)
    assert data["status"] == "failed"
    assert data["percent"] == 80
    assert "empty" in data["error"]


def test_worker_run_loop_drains_queue(session_factory) -> None:
    service = ReportJobService(session_factory)
    ids = [service.submit(_request(idempotency_key=f"k{n}")).job_id for n in range(3)]
    worker = ReportJobWorker(session_factory, RecordingLlm(["a", "b", "c"]).factory, poll_interval=0.01, max_concurrent=2)

    async def scenario():
        task = asyncio.create_task(worker.run())
        for _ in range(200):
            if all(service.get(i)["status"] == "succeeded" for i in ids):
                break
            await asyncio.sleep(0.02)
        worker.stop()
        await asyncio.wait_for(task, 5)

    asyncio.run(scenario())
    assert [service.get(i)["status"] for i in ids] == ["succeeded"] * 3


def test_list_recent_filters_by_owner(session_factory) -> None:
    service = ReportJobService(session_factory)
    service.submit(_request(idempotency_key="a"))
    service.submit(_request(idempotency_key="b", owner_id="owner-2"))

    assert len(service.list_recent()) == 2
    assert [j["metadata"]["report_type"] for j in service.list_recent("owner-2")] == ["final"]


def test_local_provider_drives_a_job_end_to_end(session_factory, llm, clock, fast_settings) -> None:
    from polaris.orchestrator import JobOrchestrator

    service = ReportJobService(session_factory)
    orchestrator = JobOrchestrator(session_factory, service, llm.factory, settings=fast_settings, clock=clock)
    worker_llm = RecordingLlm(['{"summary": "Coaching programme for new managers."}'])
    worker = ReportJobWorker(session_factory, worker_llm.factory, poll_interval=0.01)

    async def scenario():
        job = await orchestrator.create_job("owner-1", "Manager coaching")
        await orchestrator.update_stage_data(job["job_id"], "owner-1", "org", {"industry": "logistics"})
        worker_task = asyncio.create_task(worker.run())
        await orchestrator.submit_for_processing(job["job_id"], "owner-1")
        await asyncio.wait_for(orchestrator.polling.get_loop(job["job_id"]), 10)
        worker.stop()
        await asyncio.wait_for(worker_task, 5)
        return await orchestrator.get_job(job["job_id"], "owner-1")

    job = asyncio.run(scenario())
    assert job["status"] == "completed"
    assert "Coaching programme for new managers." in job["final_report"]
    assert job["final_report"].startswith("# Needs Analysis Report")
