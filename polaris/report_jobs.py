# polaris/report_jobs.py
"""
Local generation provider: report jobs persisted in `report_jobs` and executed by
ReportJobWorker (same AsyncGuard polling shape as the DB queue worker).
"""
import asyncio
import logging
import os
import time
import traceback
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from polaris.base_utils import Utils
from polaris.entities import ReportJob, ReportJobStatus, utcnow
from polaris.errors import NotFound, ProviderSubmissionError
from polaris.provider import GenerationProvider, GenerationRequest, ProviderStatus, ProviderSubmission

logger = logging.getLogger("polaris_worker")

MAX_PROMPT_CHARS = 10000
DEFAULT_ETA_SECONDS = 75


def new_report_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{os.urandom(4).hex()}"


def report_job_to_dict(row: ReportJob) -> Dict[str, Any]:
    return {
        "job_id": row.job_id,
        "status": row.status,
        "percent": row.percent,
        "eta_seconds": row.eta_seconds,
        "result": row.result,
        "error": row.error,
        "model": row.model,
        "metadata": row.metadata_json or {},
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


class ReportJobService(GenerationProvider, Utils):
    def __init__(self, session_factory: Callable[[], Session], *, status_url_prefix: str = "/api/report-jobs"):
        self.SessionFactory = session_factory
        self.status_url_prefix = status_url_prefix.rstrip("/")

    def _status_url(self, job_id: str) -> str:
        return f"{self.status_url_prefix}/{job_id}"

    def _find_by_key(self, session: Session, key: str) -> Optional[ReportJob]:
        return session.query(ReportJob).filter(ReportJob.idempotency_key == key).one_or_none()

    def submit(self, request: GenerationRequest) -> ProviderSubmission:
        prompt = (request.prompt or "").strip()
        if not prompt:
            raise ProviderSubmissionError("Report job prompt is empty")

        session = self.SessionFactory()
        try:
            if request.idempotency_key:
                existing = self._find_by_key(session, request.idempotency_key)
                if existing is not None:
                    logger.info(f"[REPORT-JOBS] idempotent replay of {existing.job_id} for key {request.idempotency_key}")
                    return ProviderSubmission(job_id=existing.job_id, status_url=self._status_url(existing.job_id))

            row = ReportJob(
                job_id=new_report_job_id(),
                owner_id=request.owner_id,
                status=ReportJobStatus.QUEUED.value,
                model=request.model,
                prompt=prompt[:MAX_PROMPT_CHARS],
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                percent=0,
                idempotency_key=request.idempotency_key,
                metadata_json=dict(request.metadata or {}),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # concurrent submit with the same key won the insert
                session.rollback()
                existing = self._find_by_key(session, request.idempotency_key) if request.idempotency_key else None
                if existing is None:
                    raise
                return ProviderSubmission(job_id=existing.job_id, status_url=self._status_url(existing.job_id))

            logger.info(f"[REPORT-JOBS] queued {row.job_id} model={row.model}")
            return ProviderSubmission(job_id=row.job_id, status_url=self._status_url(row.job_id))
        except ProviderSubmissionError:
            raise
        except Exception as e:
            session.rollback()
            self.color_print(f"submit(): DB error -> {e}", color="red")
            raise ProviderSubmissionError(f"Error submitting report job: {e}") from e
        finally:
            session.close()

    def get(self, job_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            row = session.get(ReportJob, job_id)
            if row is None:
                raise NotFound(f"Report job {job_id} not found")
            return report_job_to_dict(row)
        finally:
            session.close()

    def get_status(self, job_id: str) -> ProviderStatus:
        data = self.get(job_id)
        return ProviderStatus(
            status=data["status"],
            progress=data["percent"],
            result=data["result"],
            error=data["error"],
        )

    def list_recent(self, owner_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            q = session.query(ReportJob)
            if owner_id:
                q = q.filter(ReportJob.owner_id == owner_id)
            rows = q.order_by(ReportJob.created_at.desc()).limit(limit).all()
            return [report_job_to_dict(r) for r in rows]
        finally:
            session.close()


class ReportJobWorker:
    """
    Claims queued report jobs (FOR UPDATE SKIP LOCKED), runs the LLM call in a
    thread and writes progress 5 -> 15 -> 80 -> 100 plus the terminal state.

    `llm_factory(model, temperature, max_tokens)` returns an object with invoke(prompt).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        llm_factory: Callable[..., Any],
        *,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.SessionFactory = session_factory
        self.llm_factory = llm_factory
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight: set[str] = set()
        self._stop = asyncio.Event()

    def _update(self, job_id: str, **values) -> None:
        session = self.SessionFactory()
        try:
            row = session.get(ReportJob, job_id)
            if row is None:
                return
            for k, v in values.items():
                setattr(row, k, v)
            session.commit()
        finally:
            session.close()

    def claim(self, limit: int) -> List[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(ReportJob)
                .filter(ReportJob.status == ReportJobStatus.QUEUED.value)
                .order_by(ReportJob.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(limit)
                .all()
            )
            jobs = []
            for r in rows:
                r.status = ReportJobStatus.RUNNING.value
                r.percent = 5
                r.started_at = utcnow()
                jobs.append({
                    "job_id": r.job_id,
                    "prompt": r.prompt,
                    "model": r.model,
                    "temperature": r.temperature,
                    "max_tokens": r.max_tokens,
                })
            session.commit()
            return jobs
        finally:
            session.close()

    def execute(self, job: Dict[str, Any]) -> None:
        job_id = job["job_id"]
        try:
            self._update(job_id, percent=15, eta_seconds=DEFAULT_ETA_SECONDS)
            llm = self.llm_factory(job["model"], temperature=job["temperature"], max_tokens=job["max_tokens"])
            text = llm.invoke(job["prompt"])
            self._update(job_id, percent=80)
            if not (text or "").strip():
                raise RuntimeError("Model returned an empty response")
            self._update(
                job_id,
                status=ReportJobStatus.SUCCEEDED.value,
                percent=100,
                result=text,
                eta_seconds=0,
                completed_at=utcnow(),
            )
            logger.info(f"[REPORT-JOBS] {job_id} succeeded ({len(text)} chars)")
        except Exception as e:
            logger.error(f"[REPORT-JOBS] {job_id} failed: {e}\n{traceback.format_exc()}")
            self._update(
                job_id,
                status=ReportJobStatus.FAILED.value,
                error=str(e) or "Unknown error",
                completed_at=utcnow(),
            )

    async def _run_job(self, job: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.execute, job)
        finally:
            self._in_flight.discard(job["job_id"])

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        logger.info("ReportJobWorker running (max_concurrent=%d)", self.max_concurrent)
        while not self._stop.is_set():
            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots > 0:
                try:
                    jobs = await asyncio.to_thread(self.claim, available_slots)
                except Exception as e:
                    logger.error(f"[REPORT-JOBS] claim failed: {e}\n{traceback.format_exc()}")
                    jobs = []
                for job in jobs:
                    if job["job_id"] in self._in_flight:
                        continue
                    self._in_flight.add(job["job_id"])
                    asyncio.create_task(self._run_job(job))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
