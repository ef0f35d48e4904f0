# polaris/job_store.py
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from polaris import activity_log
from polaris.answers import stage_columns, validate_answer_map
from polaris.entities import (
    IN_FLIGHT_STATUSES,
    Job,
    JobActivity,
    JobEdit,
    JobReport,
    JobStatus,
    ReportKind,
    as_utc,
    load_owned_job,
    utcnow,
)
from polaris.errors import DynamicQuestionsLocked, InvalidTransition
from polaris.provider import ProviderStatus, map_provider_status
from polaris.report_format import render_report
from polaris.versioning import append_report_version, current_report, edit_to_dict, report_fields, report_to_dict

logger = logging.getLogger("polaris_backend")

DEFAULT_FAILURE_MESSAGE = "Unknown error"


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def job_to_dict(job: Job) -> Dict[str, Any]:
    saved = job.stage_saved_at or {}
    return {
        "job_id": job.job_id,
        "owner_id": job.owner_id,
        "title": job.title,
        "experience_level": job.experience_level,
        "status": job.status,
        "stages": {
            "greeting": {"complete": job.greeting_complete, "data": job.greeting_data or {}, "saved_at": saved.get("greeting")},
            "org": {"complete": job.org_complete, "data": job.org_data or {}, "saved_at": saved.get("org")},
            "requirements": {"complete": job.requirements_complete, "data": job.requirements_data or {}, "saved_at": saved.get("requirements")},
            "dynamic": {"complete": job.dynamic_complete, "data": job.dynamic_answers or {}, "saved_at": saved.get("dynamic")},
        },
        "dynamic_questions": job.dynamic_questions or [],
        "preliminary_report": job.preliminary_report,
        "preliminary_report_edited": job.preliminary_report_edited,
        "final_report": job.final_report,
        "final_report_edited": job.final_report_edited,
        "current_preliminary_report": current_report(job, ReportKind.PRELIMINARY.value),
        "current_final_report": current_report(job, ReportKind.FINAL.value),
        "report_job_id": job.report_job_id,
        "report_job_status": job.report_job_status,
        "report_job_progress": job.report_job_progress,
        "report_job_error": job.report_job_error,
        "report_job_kind": job.report_job_kind,
        "submission_count": job.submission_count,
        "submitted_at": _iso(job.submitted_at),
        "session_state": job.session_state or {},
        "session_saved_at": _iso(job.session_saved_at),
        "edits_remaining": job.edits_remaining,
        "edits_used": job.edits_used,
        "metadata": job.metadata_json or {},
        "legacy_summary_id": job.legacy_summary_id,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "completed_at": _iso(job.completed_at),
    }


def is_in_flight(job: Job) -> bool:
    return job.report_job_id is not None and job.report_job_status in IN_FLIGHT_STATUSES


class JobStore:
    """
    Synchronous persistence for the Job aggregate. Every public method opens its
    own session and either commits the whole mutation (activity row included) or
    nothing.
    """

    def __init__(self, session_factory: Callable[[], Session], *, edit_quota: int = 3):
        self.SessionFactory = session_factory
        self.edit_quota = edit_quota

    # -----------------------
    # CRUD
    # -----------------------

    def create(
        self,
        owner_id: str,
        *,
        title: Optional[str] = None,
        experience_level: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            job = Job(
                owner_id=owner_id,
                title=title,
                experience_level=experience_level,
                status=JobStatus.DRAFT.value,
                edits_remaining=self.edit_quota,
                edits_used=0,
            )
            session.add(job)
            session.flush()
            activity_log.record(session, job, "created", details={"title": title})
            session.commit()
            logger.info(f"[JOBS] created job {job.job_id} for {owner_id}")
            return job_to_dict(job)
        finally:
            session.close()

    def get(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            return job_to_dict(load_owned_job(session, job_id, owner_id))
        finally:
            session.close()

    def list(self, owner_id: str, status_filter: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        if status_filter is not None and status_filter not in {s.value for s in JobStatus}:
            raise ValueError(f"Unknown status filter '{status_filter}'")
        session = self.SessionFactory()
        try:
            q = session.query(Job).filter(Job.owner_id == owner_id)
            if status_filter:
                q = q.filter(Job.status == status_filter)
            rows = q.order_by(Job.updated_at.desc()).limit(max(1, int(limit))).all()
            return [job_to_dict(j) for j in rows]
        finally:
            session.close()

    def delete(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            session.delete(job)
            session.commit()
            logger.info(f"[JOBS] deleted job {job_id}")
            return {"job_id": job_id, "deleted": True}
        finally:
            session.close()

    def update_details(
        self,
        job_id: str,
        owner_id: str,
        *,
        title: Optional[str] = None,
        experience_level: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            if title is not None:
                job.title = title
            if experience_level is not None:
                job.experience_level = experience_level
            job.updated_at = utcnow()
            session.commit()
            return job_to_dict(job)
        finally:
            session.close()

    # -----------------------
    # Session state / dynamic questions
    # -----------------------

    def save_session_state(self, job_id: str, owner_id: str, state: Dict[str, Any]) -> Dict[str, Any]:
        state = validate_answer_map(state)
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            job.session_state = state
            job.session_saved_at = utcnow()
            job.updated_at = job.session_saved_at
            session.commit()
            return {"job_id": job_id, "session_saved_at": _iso(job.session_saved_at)}
        finally:
            session.close()

    def save_dynamic_questions(self, job_id: str, owner_id: str, questions: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not isinstance(questions, list) or not questions:
            raise ValueError("Dynamic questions must be a non-empty list")
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            if job.dynamic_questions:
                raise DynamicQuestionsLocked(f"Job {job_id} already has dynamic questions")
            job.dynamic_questions = [dict(q) for q in questions]
            job.updated_at = utcnow()
            activity_log.record(
                session, job, "dynamic_questions_generated", stage="dynamic",
                details={"count": len(questions)},
            )
            session.commit()
            return job_to_dict(job)
        finally:
            session.close()

    # -----------------------
    # Submission bookkeeping
    # -----------------------

    def prepare_submission(self, job_id: str, owner_id: str, report_kind: str) -> Tuple[Dict[str, Any], str]:
        """
        Validate that a new submission may start; returns (job dict, idempotency key).
        Does not write anything.
        """
        report_fields(report_kind)
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id)
            self._check_can_submit(job)
            key = f"{job.job_id}:{report_kind}:{job.submission_count + 1}"
            return job_to_dict(job), key
        finally:
            session.close()

    def _check_can_submit(self, job: Job) -> None:
        if is_in_flight(job):
            raise InvalidTransition(f"Job {job.job_id} already has a submission in flight ({job.report_job_id})")
        if job.status == JobStatus.COMPLETED.value:
            raise InvalidTransition(f"Job {job.job_id} is already completed")

    def mark_submitted(
        self,
        job_id: str,
        owner_id: str,
        handle: str,
        report_kind: str,
        *,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write handle + status together, after the provider accepted the request."""
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            self._check_can_submit(job)
            now = utcnow()
            job.report_job_id = handle
            job.report_job_status = JobStatus.QUEUED.value
            job.report_job_progress = 0
            job.report_job_error = None
            job.report_job_kind = report_kind
            job.submission_count = (job.submission_count or 0) + 1
            job.submitted_at = now
            job.status = JobStatus.QUEUED.value
            job.metadata_json = {**(job.metadata_json or {}), "report_model": model}
            job.updated_at = now
            activity_log.record(
                session, job, "submitted",
                details={"report_job_id": handle, "report_kind": report_kind, "model": model, "submission": job.submission_count},
            )
            session.commit()
            logger.info(f"[JOBS] job {job_id} submitted as {handle} ({report_kind})")
            return job_to_dict(job)
        finally:
            session.close()

    def _load_for_handle(self, session: Session, job_id: str, handle: str) -> Optional[Job]:
        """Locked Job row if `handle` is still its in-flight submission, else None."""
        job = session.query(Job).filter(Job.job_id == job_id).with_for_update().one_or_none()
        if job is None:
            return None
        if job.status == JobStatus.CANCELLED.value:
            return None
        if job.report_job_id != handle or not is_in_flight(job):
            return None
        return job

    def apply_poll_update(self, job_id: str, handle: str, provider_status: str, progress: int) -> bool:
        """Non-terminal tick: status/progress written back, last write wins."""
        status = map_provider_status(provider_status)
        if status not in IN_FLIGHT_STATUSES:
            raise ValueError(f"apply_poll_update called with terminal status '{provider_status}'")
        session = self.SessionFactory()
        try:
            job = self._load_for_handle(session, job_id, handle)
            if job is None:
                return False
            job.report_job_status = status
            job.report_job_progress = progress
            job.status = status
            job.updated_at = utcnow()
            session.commit()
            return True
        finally:
            session.close()

    def apply_terminal(self, job_id: str, handle: str, result: ProviderStatus) -> bool:
        """
        Apply a terminal provider result exactly once. Returns False (and writes
        nothing) when the Job is gone, cancelled, re-submitted or already terminal.
        """
        session = self.SessionFactory()
        try:
            job = self._load_for_handle(session, job_id, handle)
            if job is None:
                logger.debug(f"[JOBS] terminal result for {job_id}/{handle} ignored")
                return False

            now = utcnow()
            kind = job.report_job_kind or ReportKind.FINAL.value
            if result.status == "succeeded":
                content, metadata = render_report(kind, result.result)
                original_col, edited_col = report_fields(kind)
                setattr(job, original_col, content)
                setattr(job, edited_col, None)
                append_report_version(
                    session, job, kind, content,
                    metadata=metadata, generated_by="ai", model_used=(job.metadata_json or {}).get("report_model"),
                )
                job_meta = dict(job.metadata_json or {})
                if metadata.get("degraded"):
                    job_meta.update(degraded=True, degraded_reason=metadata.get("degraded_reason"))
                else:
                    job_meta.pop("degraded", None)
                    job_meta.pop("degraded_reason", None)
                job.metadata_json = job_meta
                job.report_job_status = JobStatus.COMPLETED.value
                job.report_job_progress = 100
                job.report_job_error = None
                if kind == ReportKind.FINAL.value:
                    job.status = JobStatus.COMPLETED.value
                    job.completed_at = now
                else:
                    # discovery continues after the preliminary brief
                    job.status = JobStatus.DRAFT.value
                action = "report_completed"
                details = {"report_kind": kind, "report_job_id": handle, "degraded": bool(metadata.get("degraded"))}
            else:
                job.report_job_status = JobStatus.FAILED.value
                job.report_job_error = (result.error or "").strip() or DEFAULT_FAILURE_MESSAGE
                job.status = JobStatus.FAILED.value
                action = "report_failed"
                details = {"report_kind": kind, "report_job_id": handle, "error": job.report_job_error}

            job.updated_at = now
            activity_log.record(session, job, action, details=details)
            session.commit()
            logger.info(f"[JOBS] job {job_id} -> {job.status} ({action})")
            return True
        finally:
            session.close()

    def apply_timeout(self, job_id: str, handle: str, error: str) -> bool:
        return self.apply_terminal(job_id, handle, ProviderStatus(status="failed", error=error))

    def cancel(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            if not is_in_flight(job):
                raise InvalidTransition(f"Job {job_id} has no submission in flight (status={job.status})")
            previous = job.report_job_status
            job.status = JobStatus.CANCELLED.value
            job.report_job_status = JobStatus.CANCELLED.value
            job.updated_at = utcnow()
            activity_log.record(
                session, job, "cancelled",
                details={"report_job_id": job.report_job_id, "previous_status": previous},
            )
            session.commit()
            return job_to_dict(job)
        finally:
            session.close()

    def in_flight(self) -> List[Tuple[str, str, str]]:
        """(job_id, owner_id, handle) for every Job with a live submission."""
        session = self.SessionFactory()
        try:
            rows = (
                session.query(Job.job_id, Job.owner_id, Job.report_job_id)
                .filter(Job.status.in_(IN_FLIGHT_STATUSES), Job.report_job_id.isnot(None))
                .all()
            )
            return [(r[0], r[1], r[2]) for r in rows]
        finally:
            session.close()

    def log_activity(
        self,
        job_id: str,
        owner_id: str,
        action: str,
        *,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id)
            activity_log.record(session, job, action, stage=stage, details=details)
            session.commit()
        finally:
            session.close()

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Unscoped read for background loops (no owner check)."""
        session = self.SessionFactory()
        try:
            job = session.get(Job, job_id)
            return job_to_dict(job) if job is not None else None
        finally:
            session.close()

    # -----------------------
    # Reporting
    # -----------------------

    def stats(self, owner_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            counts = dict(
                session.query(Job.status, func.count(Job.job_id))
                .filter(Job.owner_id == owner_id)
                .group_by(Job.status)
                .all()
            )
            avg_edits = (
                session.query(func.avg(Job.edits_used))
                .filter(Job.owner_id == owner_id)
                .scalar()
            )
            return {
                "total": sum(counts.values()),
                "draft": counts.get(JobStatus.DRAFT.value, 0),
                "in_progress": sum(counts.get(s, 0) for s in IN_FLIGHT_STATUSES),
                "completed": counts.get(JobStatus.COMPLETED.value, 0),
                "failed": counts.get(JobStatus.FAILED.value, 0),
                "cancelled": counts.get(JobStatus.CANCELLED.value, 0),
                "average_edits_used": round(float(avg_edits or 0.0), 2),
            }
        finally:
            session.close()

    def export(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id)
            reports = (
                session.query(JobReport)
                .filter(JobReport.job_id == job_id)
                .order_by(JobReport.report_kind, JobReport.version)
                .all()
            )
            edits = session.query(JobEdit).filter(JobEdit.job_id == job_id).order_by(JobEdit.edit_number).all()
            activity = (
                session.query(JobActivity)
                .filter(JobActivity.job_id == job_id)
                .order_by(JobActivity.created_at.asc())
                .all()
            )
            return {
                "job": job_to_dict(job),
                "reports": [report_to_dict(r) for r in reports],
                "edits": [edit_to_dict(e) for e in edits],
                "activity": [activity_log.activity_to_dict(a) for a in activity],
                "exported_at": _iso(utcnow()),
            }
        finally:
            session.close()

    def import_legacy_summary(
        self,
        owner_id: str,
        legacy_summary_id: str,
        *,
        content: str,
        title: Optional[str] = None,
        preliminary_content: Optional[str] = None,
        answers: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Create a completed Job from a pre-job summary; re-importing the same id returns the existing Job."""
        if not (content or "").strip():
            raise ValueError("Legacy summary content must not be empty")
        session = self.SessionFactory()
        try:
            existing = (
                session.query(Job)
                .filter(Job.owner_id == owner_id, Job.legacy_summary_id == legacy_summary_id)
                .one_or_none()
            )
            if existing is not None:
                return job_to_dict(existing)

            now = utcnow()
            job = Job(
                owner_id=owner_id,
                title=title,
                status=JobStatus.COMPLETED.value,
                final_report=content,
                preliminary_report=preliminary_content,
                legacy_summary_id=legacy_summary_id,
                edits_remaining=self.edit_quota,
                edits_used=0,
                completed_at=now,
            )
            for stage, data in (answers or {}).items():
                data_col, flag_col = stage_columns(stage)
                setattr(job, data_col, validate_answer_map(data))
                setattr(job, flag_col, True)
            session.add(job)
            session.flush()
            append_report_version(session, job, ReportKind.FINAL.value, content, generated_by="import")
            if preliminary_content:
                append_report_version(session, job, ReportKind.PRELIMINARY.value, preliminary_content, generated_by="import")
            activity_log.record(session, job, "imported", details={"legacy_summary_id": legacy_summary_id})
            session.commit()
            logger.info(f"[JOBS] imported legacy summary {legacy_summary_id} as job {job.job_id}")
            return job_to_dict(job)
        finally:
            session.close()
