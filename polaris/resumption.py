# polaris/resumption.py
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from polaris.answers import STAGE_COLUMNS, AnswerMap, validate_answer_map
from polaris.entities import IN_FLIGHT_STATUSES, as_utc
from polaris.errors import NotFound
from polaris.job_store import JobStore
from polaris.polling import PollingController

logger = logging.getLogger("polaris_backend")


@dataclass
class ClientDraft:
    """Client-local copy of in-progress answers, keyed by stage."""

    saved_at: datetime
    answers: Dict[str, AnswerMap] = field(default_factory=dict)
    cursor: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientDraft":
        saved_at = data.get("saved_at")
        if isinstance(saved_at, str):
            saved_at = datetime.fromisoformat(saved_at.replace("Z", "+00:00"))
        if not isinstance(saved_at, datetime):
            raise ValueError("Client draft needs a saved_at timestamp")
        answers = data.get("answers") or {}
        if not isinstance(answers, dict):
            raise ValueError("Client draft answers must be an object keyed by stage")
        for stage in answers:
            if stage not in STAGE_COLUMNS:
                raise ValueError(f"Unknown stage '{stage}' in client draft")
        return cls(
            saved_at=as_utc(saved_at),
            answers={stage: validate_answer_map(m) for stage, m in answers.items()},
            cursor=data.get("cursor"),
        )


def _parse_stamp(stamp: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(stamp)) if stamp else None


def _latest(*stamps: Optional[datetime]) -> Optional[datetime]:
    present = [s for s in stamps if s is not None]
    return max(present) if present else None


def merge_drafts(job: Dict[str, Any], draft: Optional[ClientDraft]) -> Dict[str, Any]:
    """
    Last-write-wins at stage-map granularity. A draft stage map replaces the
    server's only when the draft is newer than both the last session save and the
    last write of that stage; the cursor is compared against the session save
    alone. Without any server stamp, updated_at stands in. Nothing is persisted
    here.
    """
    stages = {stage: dict(info["data"]) for stage, info in job["stages"].items()}
    cursor = (job.get("session_state") or {}).get("cursor")
    applied: List[str] = []

    if draft is not None:
        draft_at = as_utc(draft.saved_at)
        fallback = _parse_stamp(job.get("updated_at"))
        session_at = _parse_stamp(job.get("session_saved_at"))
        for stage, answers in draft.answers.items():
            info = job["stages"].get(stage) or {}
            server_at = _latest(session_at, _parse_stamp(info.get("saved_at"))) or fallback
            if server_at is None or draft_at > server_at:
                stages[stage] = dict(answers)
                applied.append(stage)
        cursor_at = session_at or fallback
        if draft.cursor is not None and (cursor_at is None or draft_at > cursor_at):
            cursor = draft.cursor

    return {"answers": stages, "cursor": cursor, "draft_applied": applied}


class SessionResumptionController:
    def __init__(self, job_store: JobStore, polling: PollingController):
        self.job_store = job_store
        self.polling = polling

    async def resume(
        self,
        job_id: Optional[str],
        owner_id: str,
        client_draft: Optional[ClientDraft] = None,
    ) -> Dict[str, Any]:
        created_new = False
        job = None
        if job_id:
            try:
                job = await asyncio.to_thread(self.job_store.get, job_id, owner_id)
            except NotFound:
                logger.info(f"[RESUME] job {job_id} not found for {owner_id}; starting a new draft")
        if job is None:
            job = await asyncio.to_thread(self.job_store.create, owner_id)
            created_new = True

        reattached = False
        if job["status"] in IN_FLIGHT_STATUSES and job["report_job_id"]:
            await self.polling.start_polling(job["job_id"])
            reattached = True

        merged = merge_drafts(job, client_draft)
        if not created_new:
            await asyncio.to_thread(
                self.job_store.log_activity,
                job["job_id"],
                owner_id,
                "resumed",
                details={
                    "previous_status": job["status"],
                    "reattached_polling": reattached,
                    "draft_stages_applied": merged["draft_applied"],
                },
            )

        return {
            "job": job,
            "created_new": created_new,
            "reattached_polling": reattached,
            **merged,
        }

    async def resume_in_flight(self) -> List[str]:
        """Process start: re-attach a poll loop to every in-flight Job."""
        rows = await asyncio.to_thread(self.job_store.in_flight)
        job_ids = []
        for job_id, _owner_id, _handle in rows:
            await self.polling.start_polling(job_id)
            job_ids.append(job_id)
        if job_ids:
            logger.info(f"[RESUME] re-attached polling for {len(job_ids)} in-flight job(s)")
        return job_ids
