from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from polaris.db import DbConnection
from polaris.errors import ProviderSubmissionError, ProviderTransientError
from polaris.orchestrator import JobOrchestrator
from polaris.provider import GenerationProvider, ProviderStatus, ProviderSubmission
from polaris.settings import OrchestratorSettings


class FakeProvider(GenerationProvider):
    """Scripted provider: each handle pops its next status; the last one repeats."""

    def __init__(self) -> None:
        self.requests = []
        self.scripts: dict[str, list] = {}
        self.default_script: list = [ProviderStatus(status="queued")]
        self.fail_submit = False
        self.status_calls = 0

    def script(self, *steps) -> None:
        self.default_script = list(steps)

    def submit(self, request) -> ProviderSubmission:
        if self.fail_submit:
            raise ProviderSubmissionError("provider unavailable")
        self.requests.append(request)
        handle = f"rj_{len(self.requests)}"
        self.scripts[handle] = list(self.default_script)
        return ProviderSubmission(job_id=handle, status_url=f"/api/report-jobs/{handle}")

    def get_status(self, job_id: str) -> ProviderStatus:
        self.status_calls += 1
        steps = self.scripts.setdefault(job_id, list(self.default_script))
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return step


class FakeLlm:
    def __init__(self, responses: list[str] | None = None) -> None:
        self.responses = list(responses or [])
        self.prompts: list[str] = []
        self.models: list[str] = []

    def invoke(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("FakeLlm has no scripted response left")
        return self.responses.pop(0)

    def factory(self, model: str, temperature=None, max_tokens=None) -> "FakeLlm":
        self.models.append(model)
        return self


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def transient(msg: str = "connection reset") -> ProviderTransientError:
    return ProviderTransientError(msg)


@pytest.fixture
def session_factory(tmp_path: Path):
    db = DbConnection(f"sqlite:///{tmp_path / 'polaris.db'}")
    db.create_all()
    return db.build_db_session_factory()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def llm() -> FakeLlm:
    return FakeLlm()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_settings() -> OrchestratorSettings:
    return OrchestratorSettings(
        poll_interval=0.01,
        poll_timeout=900,
        debounce_seconds=0.05,
        edit_quota=3,
        report_model="test-report-model",
        question_model="test-question-model",
    )


@pytest.fixture
def orchestrator(session_factory, provider, llm, clock, fast_settings) -> JobOrchestrator:
    return JobOrchestrator(session_factory, provider, llm.factory, settings=fast_settings, clock=clock)
