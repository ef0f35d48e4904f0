# polaris/stage_store.py
import logging
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from polaris import activity_log
from polaris.answers import AnswerMap, consolidated_answers, stage_columns, validate_answer_map
from polaris.entities import load_owned_job, utcnow

logger = logging.getLogger("polaris_backend")


class StageStore:
    """
    Per-stage answer capture. A write replaces the stage map wholesale (callers
    merge before calling) and raises the stage's completion flag; flags never go
    back to false.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.SessionFactory = session_factory

    def write_stage(self, job_id: str, owner_id: str, stage_key: str, answers: Any) -> Dict[str, Any]:
        data_col, flag_col = stage_columns(stage_key)
        answer_map: AnswerMap = validate_answer_map(answers)

        session = self.SessionFactory()
        try:
            job = load_owned_job(session, job_id, owner_id, lock=True)
            setattr(job, data_col, answer_map)
            setattr(job, flag_col, True)
            now = utcnow()
            job.stage_saved_at = {**(job.stage_saved_at or {}), stage_key: now.isoformat()}
            job.updated_at = now
            activity_log.record(
                session, job, "stage_saved", stage=stage_key,
                details={"fields": sorted(answer_map)},
            )
            session.commit()
            logger.debug(f"[STAGES] job {job_id} stage '{stage_key}' saved ({len(answer_map)} fields)")
            return {
                "job_id": job_id,
                "stage": stage_key,
                "complete": True,
                "data": answer_map,
            }
        finally:
            session.close()

    def consolidated(self, job_id: str, owner_id: str) -> AnswerMap:
        session = self.SessionFactory()
        try:
            return consolidated_answers(load_owned_job(session, job_id, owner_id))
        finally:
            session.close()
