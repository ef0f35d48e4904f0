# polaris/provider.py
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from polaris.entities import JobStatus, ReportJobStatus
from polaris.errors import ProviderSubmissionError, ProviderTransientError

logger = logging.getLogger("polaris_backend")


@dataclass
class GenerationRequest:
    prompt: str
    model: str
    temperature: float
    max_tokens: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    owner_id: Optional[str] = None


@dataclass
class ProviderSubmission:
    job_id: str
    status_url: Optional[str] = None


@dataclass
class ProviderStatus:
    status: str  # provider vocabulary: queued | running | succeeded | failed
    progress: int = 0
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in (ReportJobStatus.SUCCEEDED.value, ReportJobStatus.FAILED.value)


_STATUS_MAP = {
    ReportJobStatus.QUEUED.value: JobStatus.QUEUED.value,
    ReportJobStatus.RUNNING.value: JobStatus.PROCESSING.value,
    ReportJobStatus.SUCCEEDED.value: JobStatus.COMPLETED.value,
    ReportJobStatus.FAILED.value: JobStatus.FAILED.value,
}


def map_provider_status(provider_status: str) -> str:
    """queued|running|succeeded|failed -> queued|processing|completed|failed"""
    try:
        return _STATUS_MAP[(provider_status or "").strip().lower()]
    except KeyError:
        raise ProviderTransientError(f"Unknown provider status '{provider_status}'") from None


def clamp_progress(value: Any) -> int:
    try:
        return max(0, min(100, int(value or 0)))
    except (TypeError, ValueError):
        return 0


class GenerationProvider:
    """Contract for the out-of-process text generation service."""

    def submit(self, request: GenerationRequest) -> ProviderSubmission:
        raise NotImplementedError

    def get_status(self, job_id: str) -> ProviderStatus:
        raise NotImplementedError


class HttpGenerationProvider(GenerationProvider):
    """
    Talks to a remote report-jobs endpoint:
        POST {base}/api/report-jobs        -> {"job_id", "status_url"}
        GET  {base}/api/report-jobs/{id}   -> {"status", "percent", "result", "error"}
    """

    def __init__(self, base_url: str, *, timeout: float = 15.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def submit(self, request: GenerationRequest) -> ProviderSubmission:
        headers = {"Content-Type": "application/json"}
        if request.idempotency_key:
            headers["Idempotency-Key"] = request.idempotency_key
        if request.owner_id:
            headers["X-User-Id"] = request.owner_id
        body = {
            "prompt": request.prompt,
            "model": request.model,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "metadata": request.metadata,
        }
        try:
            resp = self.http.post(f"{self.base_url}/api/report-jobs", json=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ProviderSubmissionError(f"Report job submission failed: {e}") from e

        job_id = data.get("job_id")
        if not job_id:
            raise ProviderSubmissionError(f"Report job submission returned no job_id: {data}")
        return ProviderSubmission(job_id=str(job_id), status_url=data.get("status_url"))

    def get_status(self, job_id: str) -> ProviderStatus:
        try:
            resp = self.http.get(f"{self.base_url}/api/report-jobs/{job_id}", timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ProviderTransientError(f"Report job status request failed: {e}") from e

        status = str(data.get("status") or "").lower()
        if status not in _STATUS_MAP:
            raise ProviderTransientError(f"Unknown provider status '{status}' for {job_id}")
        return ProviderStatus(
            status=status,
            progress=clamp_progress(data.get("percent", data.get("progress"))),
            result=data.get("result"),
            error=data.get("error"),
        )
