# polaris/versioning.py
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from polaris import activity_log
from polaris.base_utils import Utils
from polaris.entities import Job, JobEdit, JobReport, ReportKind, load_owned_job, utcnow
from polaris.errors import EditQuotaExceeded, InconsistentVersionState, NotFound
from polaris.prompts import REWRITE_REPORT_PROMPT

logger = logging.getLogger("polaris_backend")

REPORT_FIELDS = {
    ReportKind.PRELIMINARY.value: ("preliminary_report", "preliminary_report_edited"),
    ReportKind.FINAL.value: ("final_report", "final_report_edited"),
}


def report_fields(kind: str) -> tuple[str, str]:
    try:
        return REPORT_FIELDS[kind]
    except KeyError:
        raise ValueError(f"Unknown report kind '{kind}'. Known kinds: {list(REPORT_FIELDS)}") from None


def current_report(job: Job, kind: str) -> Optional[str]:
    """Edited overlay when present, else the generated original."""
    original_col, edited_col = report_fields(kind)
    edited = getattr(job, edited_col)
    return edited if edited is not None else getattr(job, original_col)


def append_report_version(
    session: Session,
    job: Job,
    kind: str,
    content: str,
    *,
    metadata: Optional[Dict[str, Any]] = None,
    generated_by: str = "ai",
    model_used: Optional[str] = None,
) -> JobReport:
    """
    Add a new current JobReport for `kind`, retiring the previous current row.
    Must run inside the caller's transaction with the Job row locked.
    """
    rows = (
        session.query(JobReport)
        .filter(JobReport.job_id == job.job_id, JobReport.report_kind == kind)
        .all()
    )
    current = [r for r in rows if r.is_current]
    if len(current) > 1:
        raise InconsistentVersionState(
            f"Job {job.job_id} has {len(current)} current '{kind}' report versions"
        )
    for r in current:
        r.is_current = False
    # flush the retired row before the new current row goes in
    session.flush()

    row = JobReport(
        job_id=job.job_id,
        report_kind=kind,
        version=max((r.version for r in rows), default=0) + 1,
        is_current=True,
        content=content,
        metadata_json=dict(metadata or {}),
        generated_by=generated_by,
        model_used=model_used,
    )
    session.add(row)
    session.flush()
    return row


def report_to_dict(row: JobReport) -> Dict[str, Any]:
    return {
        "id": row.id,
        "report_kind": row.report_kind,
        "version": row.version,
        "is_current": row.is_current,
        "content": row.content,
        "metadata": row.metadata_json or {},
        "generated_by": row.generated_by,
        "model_used": row.model_used,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def edit_to_dict(row: JobEdit) -> Dict[str, Any]:
    return {
        "id": row.id,
        "report_kind": row.report_kind,
        "edit_number": row.edit_number,
        "original_content": row.original_content,
        "edited_content": row.edited_content,
        "ai_assisted": row.ai_assisted,
        "ai_model": row.ai_model,
        "ai_prompt": row.ai_prompt,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class EditController(Utils):
    """
    Post-generation edits under a fixed per-Job quota.

    Every accepted edit is one transaction on the locked Job row: a JobEdit with
    the next sequential number, the quota counters, the `<kind>_edited` overlay,
    a new current JobReport version and an activity row.
    """

    def __init__(self, session_factory: Callable[[], Session], llm_factory: Callable[..., Any] | None = None):
        self.SessionFactory = session_factory
        self.llm_factory = llm_factory

    def edit(
        self,
        job_id: str,
        owner_id: str,
        report_kind: str,
        new_content: str,
        original_content_for_diff: Optional[str] = None,
        ai_assisted: bool = False,
        ai_provenance: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        report_fields(report_kind)
        if not isinstance(new_content, str) or not new_content.strip():
            raise ValueError("Edited report content must be a non-empty string")

        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            if job.edits_remaining <= 0:
                raise EditQuotaExceeded(
                    f"Job {job_id} has used all {job.edits_used} edits"
                )
            current = current_report(job, report_kind)
            if current is None:
                raise NotFound(f"Job {job_id} has no {report_kind} report to edit")

            provenance = ai_provenance or {}
            edit_number = job.edits_used + 1
            session.add(JobEdit(
                job_id=job.job_id,
                report_kind=report_kind,
                original_content=original_content_for_diff if original_content_for_diff is not None else current,
                edited_content=new_content,
                edit_number=edit_number,
                ai_assisted=bool(ai_assisted),
                ai_model=provenance.get("model"),
                ai_prompt=provenance.get("prompt"),
            ))

            job.edits_used = edit_number
            job.edits_remaining = job.edits_remaining - 1
            _, edited_col = report_fields(report_kind)
            setattr(job, edited_col, new_content)
            job.updated_at = utcnow()

            version = append_report_version(
                session,
                job,
                report_kind,
                new_content,
                metadata={"edit_number": edit_number, "ai_assisted": bool(ai_assisted)},
                generated_by="ai" if ai_assisted else "user",
                model_used=provenance.get("model"),
            )
            activity_log.record(
                session,
                job,
                "report_edited",
                details={
                    "report_kind": report_kind,
                    "edit_number": edit_number,
                    "ai_assisted": bool(ai_assisted),
                    "edits_remaining": job.edits_remaining,
                },
            )
            session.commit()
            logger.info(f"[EDITS] job {job_id} {report_kind} edit #{edit_number} ({job.edits_remaining} left)")
            return {
                "job_id": job.job_id,
                "report_kind": report_kind,
                "edit_number": edit_number,
                "edits_used": job.edits_used,
                "edits_remaining": job.edits_remaining,
                "version": version.version,
                "content": new_content,
            }
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def current_report(self, job_id: str, owner_id: str, report_kind: str) -> Dict[str, Any]:
        report_fields(report_kind)
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id)
            _, edited_col = report_fields(report_kind)
            return {
                "job_id": job.job_id,
                "report_kind": report_kind,
                "content": current_report(job, report_kind),
                "edited": getattr(job, edited_col) is not None,
            }
        finally:
            session.close()

    def history(self, job_id: str, owner_id: str, report_kind: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        session = self.SessionFactory()
        try:
            load_owned_job(session, job_id, owner_id)
            reports_q = session.query(JobReport).filter(JobReport.job_id == job_id)
            edits_q = session.query(JobEdit).filter(JobEdit.job_id == job_id)
            if report_kind:
                report_fields(report_kind)
                reports_q = reports_q.filter(JobReport.report_kind == report_kind)
                edits_q = edits_q.filter(JobEdit.report_kind == report_kind)
            return {
                "versions": [report_to_dict(r) for r in reports_q.order_by(JobReport.report_kind, JobReport.version).all()],
                "edits": [edit_to_dict(e) for e in edits_q.order_by(JobEdit.edit_number).all()],
            }
        finally:
            session.close()

    def ai_rewrite(self, job_id: str, owner_id: str, report_kind: str, instruction: str, model: str) -> Dict[str, Any]:
        """Rewrite the current report with the LLM and store it as an ai-assisted edit."""
        if not (instruction or "").strip():
            raise ValueError("Rewrite instruction must not be empty")
        if self.llm_factory is None:
            raise RuntimeError("EditController has no llm_factory configured")

        report_fields(report_kind)
        # quota checked before the report and before the LLM call
        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id)
            if job.edits_remaining <= 0:
                raise EditQuotaExceeded(f"Job {job_id} has no edits left")
            current = current_report(job, report_kind)
        finally:
            session.close()
        if current is None:
            raise NotFound(f"Job {job_id} has no {report_kind} report to edit")

        prompt = self.unsafe_string_format(REWRITE_REPORT_PROMPT, report=current, instruction=instruction)
        rewritten = self.clean_triple_backticks(self.llm_factory(model).invoke(prompt)).strip()
        if not rewritten:
            raise ValueError("The model returned an empty rewrite")
        return self.edit(
            job_id,
            owner_id,
            report_kind,
            rewritten,
            original_content_for_diff=current,
            ai_assisted=True,
            ai_provenance={"model": model, "prompt": instruction},
        )
