# worker_main.py
"""
Background process for the Job lifecycle.

- Re-attaches a poll loop to every Job left queued/processing by a previous
  process (the terminal write is idempotent, so an API process polling the same
  Job at the same time is harmless).
- When GENERATION_PROVIDER=local, also runs ReportJobWorker, which executes the
  queued rows of `report_jobs` against the LLM.

Both loops run on one asyncio event loop until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal

from polaris import settings
from polaris.db import DbConnection
from polaris.llm_client import LlmFactory
from polaris.orchestrator import JobOrchestrator
from polaris.provider import HttpGenerationProvider
from polaris.report_jobs import ReportJobService, ReportJobWorker

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("polaris_worker")


async def run() -> None:
    db = DbConnection()
    db.create_all()
    session_factory = db.build_db_session_factory()
    llm_factory = LlmFactory(
        vertex_project=settings.PROJECT_ID,
        vertex_region=settings.REGION,
        timeout=settings.LLM_TIMEOUT,
    )

    report_worker = None
    if settings.GENERATION_PROVIDER == "http":
        provider = HttpGenerationProvider(settings.GENERATION_PROVIDER_URL, timeout=settings.GENERATION_PROVIDER_TIMEOUT)
    else:
        provider = ReportJobService(session_factory)
        report_worker = ReportJobWorker(
            session_factory,
            llm_factory.get,
            poll_interval=settings.REPORT_WORKER_POLL_INTERVAL,
            max_concurrent=settings.REPORT_WORKER_CONCURRENCY,
        )

    orchestrator = JobOrchestrator(session_factory, provider, llm_factory.get)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    resumed = await orchestrator.resume_in_flight()
    logger.info("Worker started: provider=%s, resumed %d in-flight job(s)", settings.GENERATION_PROVIDER, len(resumed))

    worker_task = asyncio.create_task(report_worker.run()) if report_worker else None
    try:
        await stop.wait()
    finally:
        logger.info("Worker stopping")
        if report_worker is not None:
            report_worker.stop()
            await asyncio.gather(worker_task, return_exceptions=True)
        await orchestrator.shutdown()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
