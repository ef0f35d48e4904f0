# polaris/polling.py
import asyncio
import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from polaris.entities import JobStatus, as_utc, utcnow
from polaris.errors import NotFound, ProviderSubmissionError, ProviderTransientError
from polaris.job_store import JobStore
from polaris.provider import GenerationProvider, GenerationRequest

logger = logging.getLogger("polaris_backend")


class PollingController:
    """
    Submits generation requests and follows them to a terminal state.

    Store and provider are synchronous; every call goes through asyncio.to_thread.
    One poll loop per Job per process: loops live in `_loops` keyed by job id,
    each with its own stop event.
    """

    def __init__(
        self,
        job_store: JobStore,
        provider: GenerationProvider,
        *,
        poll_interval: float = 3.0,
        poll_timeout: float = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_store = job_store
        self.provider = provider
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.clock = clock
        self._loops: Dict[str, Tuple[asyncio.Task, asyncio.Event]] = {}

    # -----------------------
    # Submission
    # -----------------------

    async def submit(
        self,
        job_id: str,
        owner_id: str,
        rendered_prompt: str,
        model_hint: str,
        report_kind: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 4000,
    ) -> Dict[str, Any]:
        if not (rendered_prompt or "").strip():
            raise ValueError("Cannot submit an empty prompt")

        _, idempotency_key = await asyncio.to_thread(
            self.job_store.prepare_submission, job_id, owner_id, report_kind
        )
        request = GenerationRequest(
            prompt=rendered_prompt,
            model=model_hint,
            temperature=temperature,
            max_tokens=max_tokens,
            metadata={"starmap_job_id": job_id, "report_type": report_kind},
            idempotency_key=idempotency_key,
            owner_id=owner_id,
        )
        try:
            submission = await asyncio.to_thread(self.provider.submit, request)
        except ProviderSubmissionError:
            logger.warning(f"[POLL] submission for job {job_id} rejected by provider")
            raise
        except Exception as e:
            raise ProviderSubmissionError(f"Report job submission failed: {e}") from e

        return await asyncio.to_thread(
            self.job_store.mark_submitted,
            job_id,
            owner_id,
            submission.job_id,
            report_kind,
            model=model_hint,
        )

    # -----------------------
    # Polling
    # -----------------------

    def _timed_out(self, snapshot: Dict[str, Any]) -> bool:
        submitted_at = snapshot.get("submitted_at")
        if not submitted_at or self.poll_timeout <= 0:
            return False
        started = as_utc(datetime.fromisoformat(submitted_at))
        return (as_utc(self.clock()) - started).total_seconds() > self.poll_timeout

    async def poll(self, job_id: str) -> bool:
        """
        One tick. Returns True when there is nothing left to poll (terminal,
        cancelled, deleted or re-submitted). Request failures surface as
        ProviderTransientError.
        """
        snapshot = await asyncio.to_thread(self.job_store.snapshot, job_id)
        if snapshot is None:
            return True
        handle = snapshot["report_job_id"]
        if (
            handle is None
            or snapshot["status"] == JobStatus.CANCELLED.value
            or snapshot["report_job_status"] not in (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
        ):
            return True

        if self._timed_out(snapshot):
            error = f"Report generation timed out after {int(self.poll_timeout)} seconds"
            await asyncio.to_thread(self.job_store.apply_timeout, job_id, handle, error)
            logger.warning(f"[POLL] job {job_id} ({handle}) timed out")
            return True

        try:
            status = await asyncio.to_thread(self.provider.get_status, handle)
        except ProviderTransientError:
            raise
        except NotFound as e:
            raise ProviderTransientError(f"Provider does not know {handle}: {e}") from e
        except Exception as e:
            raise ProviderTransientError(f"Status request for {handle} failed: {e}") from e

        if status.terminal:
            await asyncio.to_thread(self.job_store.apply_terminal, job_id, handle, status)
            return True

        await asyncio.to_thread(
            self.job_store.apply_poll_update, job_id, handle, status.status, status.progress
        )
        return False

    async def _loop(self, job_id: str, stop: asyncio.Event) -> None:
        logger.info(f"[POLL] loop started for job {job_id}")
        try:
            while not stop.is_set():
                try:
                    done = await self.poll(job_id)
                except ProviderTransientError as e:
                    logger.warning(f"[POLL] job {job_id}: transient error, retrying next tick: {e}")
                    done = False
                except Exception as e:
                    logger.error(f"[POLL] job {job_id}: tick failed: {e}\n{traceback.format_exc()}")
                    done = False
                if done:
                    break
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            entry = self._loops.get(job_id)
            if entry is not None and entry[1] is stop:
                del self._loops[job_id]
            logger.info(f"[POLL] loop finished for job {job_id}")

    async def start_polling(self, job_id: str) -> asyncio.Task:
        await self.stop_polling(job_id)
        stop = asyncio.Event()
        task = asyncio.create_task(self._loop(job_id, stop), name=f"poll-{job_id}")
        self._loops[job_id] = (task, stop)
        return task

    async def stop_polling(self, job_id: str) -> bool:
        entry = self._loops.pop(job_id, None)
        if entry is None:
            return False
        task, stop = entry
        stop.set()
        if task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return True

    async def stop_all(self) -> None:
        for job_id in list(self._loops):
            await self.stop_polling(job_id)

    def is_polling(self, job_id: str) -> bool:
        return job_id in self._loops

    def active_loops(self) -> list[str]:
        return list(self._loops)

    def get_loop(self, job_id: str) -> Optional[asyncio.Task]:
        entry = self._loops.get(job_id)
        return entry[0] if entry else None
