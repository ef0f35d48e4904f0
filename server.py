import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from polaris import settings
from polaris.errors import (
    DynamicQuestionsLocked,
    EditQuotaExceeded,
    GenerationFormatError,
    InconsistentVersionState,
    InvalidTransition,
    NotFound,
    ProviderSubmissionError,
    ProviderTransientError,
    Unauthenticated,
)
from polaris.orchestrator import JobOrchestrator
from polaris.provider import GenerationRequest
from polaris.report_jobs import ReportJobService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("polaris_backend")

ERROR_STATUS = [
    (NotFound, 404),
    (Unauthenticated, 401),
    (EditQuotaExceeded, 409),
    (InvalidTransition, 409),
    (DynamicQuestionsLocked, 409),
    (GenerationFormatError, 502),
    (ProviderSubmissionError, 502),
    (ProviderTransientError, 503),
    (InconsistentVersionState, 500),
    (ValueError, 400),
]


# -----------------------
# Request bodies
# -----------------------

class CreateJobBody(BaseModel):
    title: Optional[str] = None
    experience_level: Optional[str] = None


class StageBody(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)


class QuestionsBody(BaseModel):
    questions: List[Dict[str, Any]]


class GenerateQuestionsBody(BaseModel):
    count: Optional[int] = None
    model: Optional[str] = None


class SubmitBody(BaseModel):
    report_kind: str = "final"
    model: Optional[str] = None


class SessionBody(BaseModel):
    state: Dict[str, Any] = Field(default_factory=dict)
    debounce: bool = False


class ResumeBody(BaseModel):
    job_id: Optional[str] = None
    client_draft: Optional[Dict[str, Any]] = None


class EditBody(BaseModel):
    content: str
    original_content: Optional[str] = None
    ai_assisted: bool = False
    ai_model: Optional[str] = None
    ai_prompt: Optional[str] = None


class RewriteBody(BaseModel):
    instruction: str
    model: Optional[str] = None


class LegacyImportBody(BaseModel):
    legacy_summary_id: str
    content: str
    title: Optional[str] = None
    preliminary_content: Optional[str] = None
    answers: Optional[Dict[str, Dict[str, Any]]] = None


class ReportJobBody(BaseModel):
    prompt: str
    model: Optional[str] = None
    temperature: float = settings.REPORT_TEMPERATURE
    max_tokens: int = settings.REPORT_MAX_TOKENS
    metadata: Dict[str, Any] = Field(default_factory=dict)


def owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise Unauthenticated("Missing X-User-Id header")
    return x_user_id.strip()


def create_app(
    orchestrator: JobOrchestrator,
    report_jobs: Optional[ReportJobService] = None,
    *,
    resume_on_startup: bool = False,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resume_on_startup:
            await orchestrator.resume_in_flight()
        yield
        await orchestrator.shutdown()

    app = FastAPI(title="Polaris Job Orchestrator", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def polaris_error_handler(request: Request, exc: Exception):
        for exc_type, status_code in ERROR_STATUS:
            if isinstance(exc, exc_type):
                break
        else:
            status_code = 500
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        body: Dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
        if isinstance(exc, GenerationFormatError):
            body["snippet"] = exc.snippet
        return JSONResponse(status_code=status_code, content=body)

    for exc_type, _ in ERROR_STATUS:
        app.add_exception_handler(exc_type, polaris_error_handler)

    # -----------------------
    # Jobs
    # -----------------------

    @app.post("/jobs", status_code=201)
    async def create_job(body: CreateJobBody, user: str = Depends(owner_id)):
        return await orchestrator.create_job(user, body.title, body.experience_level)

    @app.get("/jobs")
    async def list_jobs(status: Optional[str] = None, limit: int = 20, user: str = Depends(owner_id)):
        return await orchestrator.list_jobs(user, status, limit)

    @app.get("/jobs/stats")
    async def job_stats(user: str = Depends(owner_id)):
        return await orchestrator.job_stats(user)

    @app.post("/jobs/import-legacy", status_code=201)
    async def import_legacy(body: LegacyImportBody, user: str = Depends(owner_id)):
        return await orchestrator.import_legacy_summary(
            user,
            body.legacy_summary_id,
            body.content,
            title=body.title,
            preliminary_content=body.preliminary_content,
            answers=body.answers,
        )

    @app.post("/jobs/resume")
    async def resume(body: ResumeBody, user: str = Depends(owner_id)):
        return await orchestrator.resume_job(body.job_id, user, body.client_draft)

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, user: str = Depends(owner_id)):
        return await orchestrator.get_job(job_id, user)

    @app.patch("/jobs/{job_id}")
    async def update_job(job_id: str, body: CreateJobBody, user: str = Depends(owner_id)):
        return await orchestrator.update_job_details(job_id, user, body.title, body.experience_level)

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str, user: str = Depends(owner_id)):
        return await orchestrator.delete_job(job_id, user)

    @app.put("/jobs/{job_id}/stages/{stage_key}")
    async def update_stage(job_id: str, stage_key: str, body: StageBody, user: str = Depends(owner_id)):
        return await orchestrator.update_stage_data(job_id, user, stage_key, body.answers)

    @app.put("/jobs/{job_id}/dynamic-questions")
    async def save_questions(job_id: str, body: QuestionsBody, user: str = Depends(owner_id)):
        return await orchestrator.save_dynamic_questions(job_id, user, body.questions)

    @app.post("/jobs/{job_id}/dynamic-questions/generate")
    async def generate_questions(job_id: str, body: GenerateQuestionsBody, user: str = Depends(owner_id)):
        return await orchestrator.generate_dynamic_questions(job_id, user, body.count, body.model)

    @app.post("/jobs/{job_id}/submit", status_code=202)
    async def submit(job_id: str, body: SubmitBody, user: str = Depends(owner_id)):
        return await orchestrator.submit_for_processing(job_id, user, body.report_kind, body.model)

    @app.get("/jobs/{job_id}/status")
    async def check_status(job_id: str, user: str = Depends(owner_id)):
        return await orchestrator.check_status(job_id, user)

    @app.post("/jobs/{job_id}/cancel")
    async def cancel(job_id: str, user: str = Depends(owner_id)):
        return await orchestrator.cancel_job(job_id, user)

    @app.put("/jobs/{job_id}/session")
    async def save_session(job_id: str, body: SessionBody, user: str = Depends(owner_id)):
        if body.debounce:
            return await orchestrator.queue_session_state(job_id, user, body.state)
        return await orchestrator.save_session_state(job_id, user, body.state)

    @app.post("/jobs/{job_id}/resume")
    async def resume_one(job_id: str, body: Optional[ResumeBody] = None, user: str = Depends(owner_id)):
        draft = body.client_draft if body else None
        return await orchestrator.resume_job(job_id, user, draft)

    # -----------------------
    # Reports
    # -----------------------

    @app.get("/jobs/{job_id}/reports")
    async def report_history(job_id: str, kind: Optional[str] = None, user: str = Depends(owner_id)):
        return await orchestrator.get_report_history(job_id, user, kind)

    @app.get("/jobs/{job_id}/reports/{kind}")
    async def current_report(job_id: str, kind: str, user: str = Depends(owner_id)):
        return await orchestrator.get_current_report(job_id, user, kind)

    @app.post("/jobs/{job_id}/reports/{kind}/edits", status_code=201)
    async def edit_report(job_id: str, kind: str, body: EditBody, user: str = Depends(owner_id)):
        provenance = None
        if body.ai_assisted:
            provenance = {"model": body.ai_model, "prompt": body.ai_prompt}
        return await orchestrator.edit_report(
            job_id, user, kind, body.content, body.original_content, body.ai_assisted, provenance
        )

    @app.post("/jobs/{job_id}/reports/{kind}/rewrite", status_code=201)
    async def rewrite_report(job_id: str, kind: str, body: RewriteBody, user: str = Depends(owner_id)):
        return await orchestrator.ai_rewrite_report(job_id, user, kind, body.instruction, body.model)

    @app.get("/jobs/{job_id}/activity")
    async def activity(job_id: str, limit: Optional[int] = None, user: str = Depends(owner_id)):
        return await orchestrator.get_activity(job_id, user, limit)

    @app.get("/jobs/{job_id}/export")
    async def export(job_id: str, user: str = Depends(owner_id)):
        return await orchestrator.export_job(job_id, user)

    # -----------------------
    # Local generation provider
    # -----------------------

    if report_jobs is not None:

        @app.post("/api/report-jobs", status_code=202)
        async def submit_report_job(
            body: ReportJobBody,
            idempotency_key: Optional[str] = Header(default=None),
            x_user_id: Optional[str] = Header(default=None),
        ):
            request = GenerationRequest(
                prompt=body.prompt,
                model=body.model or settings.DEFAULT_REPORT_MODEL,
                temperature=body.temperature,
                max_tokens=body.max_tokens,
                metadata=body.metadata,
                idempotency_key=idempotency_key,
                owner_id=x_user_id,
            )
            submission = await asyncio.to_thread(report_jobs.submit, request)
            return {"job_id": submission.job_id, "status_url": submission.status_url}

        @app.get("/api/report-jobs")
        async def recent_report_jobs(limit: int = 20, x_user_id: Optional[str] = Header(default=None)):
            return await asyncio.to_thread(report_jobs.list_recent, x_user_id, limit)

        @app.get("/api/report-jobs/{report_job_id}")
        async def report_job_status(report_job_id: str):
            return await asyncio.to_thread(report_jobs.get, report_job_id)

    return app


def build_default_app() -> FastAPI:
    from polaris.db import DbConnection
    from polaris.llm_client import LlmFactory
    from polaris.provider import HttpGenerationProvider

    db = DbConnection()
    db.create_all()
    session_factory = db.build_db_session_factory()
    llm_factory = LlmFactory(
        vertex_project=settings.PROJECT_ID,
        vertex_region=settings.REGION,
        timeout=settings.LLM_TIMEOUT,
    )
    report_jobs = ReportJobService(session_factory)
    if settings.GENERATION_PROVIDER == "http":
        provider = HttpGenerationProvider(settings.GENERATION_PROVIDER_URL, timeout=settings.GENERATION_PROVIDER_TIMEOUT)
    else:
        provider = report_jobs
    orchestrator = JobOrchestrator(session_factory, provider, llm_factory.get)
    return create_app(orchestrator, report_jobs)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(build_default_app(), host="0.0.0.0", port=8000)
