# polaris/debounce.py
import asyncio
import logging
import traceback
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger("polaris_backend")


class DebouncedSaver:
    """
    Coalesces session-state writes per Job: each queue() restarts the Job's quiet
    period and replaces its pending state, so only the latest state is written.
    Intermediate states may be dropped.

    `save(job_id, owner_id, state)` is synchronous and runs in a worker thread.
    """

    def __init__(self, save: Callable[[str, str, Dict[str, Any]], Any], delay: float = 1.5):
        self.save = save
        self.delay = delay
        self._pending: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    def queue(self, job_id: str, owner_id: str, state: Dict[str, Any]) -> None:
        self._pending[job_id] = (owner_id, state)
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        self._timers[job_id] = asyncio.get_running_loop().create_task(self._fire_later(job_id))

    async def _fire_later(self, job_id: str) -> None:
        await asyncio.sleep(self.delay)
        # past this point a newer queue() must not cancel the write
        if self._timers.get(job_id) is asyncio.current_task():
            del self._timers[job_id]
        await self._write(job_id)

    async def _write(self, job_id: str) -> bool:
        entry = self._pending.pop(job_id, None)
        if entry is None:
            return False
        owner_id, state = entry
        try:
            await asyncio.to_thread(self.save, job_id, owner_id, state)
            return True
        except Exception as e:
            logger.error(f"[SESSION] debounced save for job {job_id} failed: {e}\n{traceback.format_exc()}")
            return False

    async def flush(self, job_id: str | None = None) -> int:
        """Write pending states now (one Job, or all). Returns how many were written."""
        job_ids = [job_id] if job_id is not None else list(self._pending)
        written = 0
        for jid in job_ids:
            timer = self._timers.pop(jid, None)
            if timer is not None:
                timer.cancel()
            if await self._write(jid):
                written += 1
        return written

    def discard(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()
        self._pending.pop(job_id, None)

    def pending(self) -> List[str]:
        return list(self._pending)
