# polaris/activity_log.py
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from polaris.entities import Job, JobActivity, load_owned_job

logger = logging.getLogger("polaris_backend")


def record(
    session: Session,
    job: Job,
    action: str,
    stage: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JobActivity:
    """Append an audit row inside the caller's transaction (caller commits)."""
    row = JobActivity(
        job_id=job.job_id,
        owner_id=job.owner_id,
        action=action,
        stage=stage,
        details=dict(details or {}),
    )
    session.add(row)
    return row


def activity_to_dict(row: JobActivity) -> Dict[str, Any]:
    return {
        "id": row.id,
        "job_id": row.job_id,
        "action": row.action,
        "stage": row.stage,
        "details": row.details or {},
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class ActivityLog:
    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory

    def list(self, job_id: str, owner_id: str, limit: int | None = None) -> List[Dict[str, Any]]:
        """Newest first."""
        session = self.SessionFactory()
        try:
            load_owned_job(session, job_id, owner_id)
            q = (
                session.query(JobActivity)
                .filter(JobActivity.job_id == job_id)
                .order_by(JobActivity.created_at.desc())
            )
            if limit:
                q = q.limit(limit)
            return [activity_to_dict(r) for r in q.all()]
        finally:
            session.close()
