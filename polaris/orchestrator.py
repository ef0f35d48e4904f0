# polaris/orchestrator.py
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from polaris.activity_log import ActivityLog
from polaris.answers import STATIC_STAGES, AnswerMap, validate_answer_map
from polaris.base_utils import Utils
from polaris.debounce import DebouncedSaver
from polaris.entities import ReportKind, utcnow
from polaris.errors import DynamicQuestionsLocked, GenerationFormatError, ProviderTransientError, Unauthenticated
from polaris.job_store import JobStore
from polaris.polling import PollingController
from polaris.prompts import FINAL_REPORT_PROMPT, PRELIMINARY_REPORT_PROMPT, PRELIMINARY_SECTION
from polaris.provider import GenerationProvider
from polaris.question_generator import DynamicQuestionGenerator, normalize_questions
from polaris.resumption import ClientDraft, SessionResumptionController
from polaris.settings import OrchestratorSettings
from polaris.stage_store import StageStore
from polaris.versioning import EditController, report_fields

logger = logging.getLogger("polaris_backend")


def collect_answers(job: Dict[str, Any], include_dynamic: bool = False) -> AnswerMap:
    """Answers of the completed stages of a job dict, later stages winning."""
    stages = STATIC_STAGES + (("dynamic",) if include_dynamic else ())
    merged: AnswerMap = {}
    for stage in stages:
        info = job["stages"][stage]
        if info["complete"]:
            merged.update(info["data"])
    return merged


class JobOrchestrator(Utils):
    """
    Async facade over the Job lifecycle. Every operation takes the caller's
    owner id; other owners' Jobs behave as missing.

    `llm_factory(model, temperature=None, max_tokens=None)` returns an object
    exposing invoke(prompt) -> str.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: GenerationProvider,
        llm_factory: Callable[..., Any],
        *,
        settings: OrchestratorSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or OrchestratorSettings()
        self.llm_factory = llm_factory
        self.job_store = JobStore(session_factory, edit_quota=self.settings.edit_quota)
        self.stage_store = StageStore(session_factory)
        self.activity = ActivityLog(session_factory)
        self.polling = PollingController(
            self.job_store,
            provider,
            poll_interval=self.settings.poll_interval,
            poll_timeout=self.settings.poll_timeout,
            clock=clock,
        )
        self.resumption = SessionResumptionController(self.job_store, self.polling)
        self.edits = EditController(session_factory, llm_factory)
        self.saver = DebouncedSaver(self.job_store.save_session_state, delay=self.settings.debounce_seconds)

    @staticmethod
    def _require_owner(owner_id: Optional[str]) -> str:
        if not owner_id or not str(owner_id).strip():
            raise Unauthenticated("An owner id is required")
        return str(owner_id).strip()

    # -----------------------
    # Jobs
    # -----------------------

    async def create_job(self, owner_id: str, title: Optional[str] = None, experience_level: Optional[str] = None) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(
            self.job_store.create, owner_id, title=title, experience_level=experience_level
        )

    async def get_job(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.job_store.get, job_id, owner_id)

    async def list_jobs(self, owner_id: str, status_filter: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.job_store.list, owner_id, status_filter, limit)

    async def update_job_details(
        self,
        job_id: str,
        owner_id: str,
        title: Optional[str] = None,
        experience_level: Optional[str] = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(
            self.job_store.update_details, job_id, owner_id, title=title, experience_level=experience_level
        )

    async def delete_job(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        result = await asyncio.to_thread(self.job_store.delete, job_id, owner_id)
        await self.polling.stop_polling(job_id)
        self.saver.discard(job_id)
        return result

    # -----------------------
    # Stages / dynamic questions
    # -----------------------

    async def update_stage_data(self, job_id: str, owner_id: str, stage_key: str, answers: Dict[str, Any]) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.stage_store.write_stage, job_id, owner_id, stage_key, answers)

    async def save_dynamic_questions(self, job_id: str, owner_id: str, questions: List[Dict[str, Any]]) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        try:
            fields = normalize_questions(questions)
        except GenerationFormatError as e:
            raise ValueError(str(e)) from e
        return await asyncio.to_thread(self.job_store.save_dynamic_questions, job_id, owner_id, fields)

    async def generate_dynamic_questions(
        self,
        job_id: str,
        owner_id: str,
        count: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        job = await asyncio.to_thread(self.job_store.get, job_id, owner_id)
        if job["dynamic_questions"]:
            raise DynamicQuestionsLocked(f"Job {job_id} already has dynamic questions")

        generator = DynamicQuestionGenerator(self.llm_factory(model or self.settings.question_model))
        fields = await asyncio.to_thread(
            generator.generate,
            collect_answers(job),
            count=count,
            experience_level=job["experience_level"],
            preliminary_report=job["current_preliminary_report"],
        )
        return await asyncio.to_thread(self.job_store.save_dynamic_questions, job_id, owner_id, fields)

    # -----------------------
    # Submission / polling
    # -----------------------

    def render_report_prompt(self, job: Dict[str, Any], report_kind: str) -> str:
        experience_level = job["experience_level"] or "unspecified"
        if report_kind == ReportKind.PRELIMINARY.value:
            return self.unsafe_string_format(
                PRELIMINARY_REPORT_PROMPT,
                experience_level=experience_level,
                answers_json=json.dumps(collect_answers(job), indent=2, ensure_ascii=False),
            )
        preliminary_section = ""
        if job["current_preliminary_report"]:
            preliminary_section = self.unsafe_string_format(
                PRELIMINARY_SECTION, preliminary_report=job["current_preliminary_report"]
            )
        return self.unsafe_string_format(
            FINAL_REPORT_PROMPT,
            experience_level=experience_level,
            answers_json=json.dumps(collect_answers(job, include_dynamic=True), indent=2, ensure_ascii=False),
            questions_json=json.dumps(job["dynamic_questions"], indent=2, ensure_ascii=False),
            preliminary_section=preliminary_section,
        )

    async def submit_for_processing(
        self,
        job_id: str,
        owner_id: str,
        report_kind: str = ReportKind.FINAL.value,
        model: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        report_fields(report_kind)
        if prompt is None:
            job = await asyncio.to_thread(self.job_store.get, job_id, owner_id)
            prompt = self.render_report_prompt(job, report_kind)
        job = await self.polling.submit(
            job_id,
            owner_id,
            prompt,
            model or self.settings.report_model,
            report_kind,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )
        await self.polling.start_polling(job_id)
        return job

    async def check_status(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        """Current Job state, after one immediate poll tick when a submission is in flight."""
        owner_id = self._require_owner(owner_id)
        job = await asyncio.to_thread(self.job_store.get, job_id, owner_id)
        if job["report_job_id"] and job["report_job_status"] in ("queued", "processing"):
            try:
                await self.polling.poll(job_id)
            except ProviderTransientError as e:
                logger.warning(f"[STATUS] job {job_id}: {e}")
            job = await asyncio.to_thread(self.job_store.get, job_id, owner_id)
        job["polling"] = self.polling.is_polling(job_id)
        return job

    async def cancel_job(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        job = await asyncio.to_thread(self.job_store.cancel, job_id, owner_id)
        await self.polling.stop_polling(job_id)
        return job

    # -----------------------
    # Session state / resumption
    # -----------------------

    async def save_session_state(self, job_id: str, owner_id: str, state: Dict[str, Any]) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        self.saver.discard(job_id)
        return await asyncio.to_thread(self.job_store.save_session_state, job_id, owner_id, state)

    async def queue_session_state(self, job_id: str, owner_id: str, state: Dict[str, Any]) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        state = validate_answer_map(state)
        await asyncio.to_thread(self.job_store.get, job_id, owner_id)
        self.saver.queue(job_id, owner_id, state)
        return {"job_id": job_id, "queued": True}

    async def resume_job(
        self,
        job_id: Optional[str],
        owner_id: str,
        client_draft: ClientDraft | Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        if isinstance(client_draft, dict):
            client_draft = ClientDraft.from_dict(client_draft)
        return await self.resumption.resume(job_id, owner_id, client_draft)

    async def resume_in_flight(self) -> List[str]:
        return await self.resumption.resume_in_flight()

    # -----------------------
    # Reports / edits
    # -----------------------

    async def edit_report(
        self,
        job_id: str,
        owner_id: str,
        report_kind: str,
        new_content: str,
        original_content_for_diff: Optional[str] = None,
        ai_assisted: bool = False,
        ai_provenance: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(
            self.edits.edit,
            job_id,
            owner_id,
            report_kind,
            new_content,
            original_content_for_diff,
            ai_assisted,
            ai_provenance,
        )

    async def ai_rewrite_report(
        self,
        job_id: str,
        owner_id: str,
        report_kind: str,
        instruction: str,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(
            self.edits.ai_rewrite, job_id, owner_id, report_kind, instruction, model or self.settings.report_model
        )

    async def get_current_report(self, job_id: str, owner_id: str, report_kind: str = ReportKind.FINAL.value) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.edits.current_report, job_id, owner_id, report_kind)

    async def get_report_history(self, job_id: str, owner_id: str, report_kind: Optional[str] = None) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.edits.history, job_id, owner_id, report_kind)

    # -----------------------
    # Audit / export / stats
    # -----------------------

    async def get_activity(self, job_id: str, owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.activity.list, job_id, owner_id, limit)

    async def export_job(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.job_store.export, job_id, owner_id)

    async def job_stats(self, owner_id: str) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(self.job_store.stats, owner_id)

    async def import_legacy_summary(
        self,
        owner_id: str,
        legacy_summary_id: str,
        content: str,
        title: Optional[str] = None,
        preliminary_content: Optional[str] = None,
        answers: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        owner_id = self._require_owner(owner_id)
        return await asyncio.to_thread(
            self.job_store.import_legacy_summary,
            owner_id,
            legacy_summary_id,
            content=content,
            title=title,
            preliminary_content=preliminary_content,
            answers=answers,
        )

    async def shutdown(self) -> None:
        written = await self.saver.flush()
        await self.polling.stop_all()
        logger.info(f"[ORCHESTRATOR] shut down (flushed {written} pending session state(s))")
