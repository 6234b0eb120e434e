"""Pipeline worker process.

Run with ``python -m app.worker``. Each job kind gets its own pool of
polling tasks; a separate loop returns stalled jobs to the queue.
"""

import asyncio
import logging
import os
import signal
import socket
from typing import Dict

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings, configure_logging
from app.core.database import async_session, engine
from app.core.dependencies import PipelineServices, build_services
from app.core.errors import PipelineError
from app.schemas.jobs import parse_payload

logger = logging.getLogger(__name__)


def default_concurrency() -> Dict[str, int]:
    return {
        "initiate-call": settings.WORKER_CONCURRENCY_INITIATE_CALL,
        "process-recording": settings.WORKER_CONCURRENCY_PROCESS_RECORDING,
        "process-transcription": settings.WORKER_CONCURRENCY_PROCESS_TRANSCRIPTION,
    }


class JobWorker:
    def __init__(
        self,
        services: PipelineServices,
        session_factory: async_sessionmaker = async_session,
        worker_id: str | None = None,
        poll_interval: float | None = None,
    ):
        self.services = services
        self.queue = services.queue
        self.session_factory = session_factory
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS

    async def _dispatch(self, db: AsyncSession, kind: str, payload, final_attempt: bool) -> None:
        coordinator = self.services.coordinator
        if kind == "initiate-call":
            await coordinator.initiate_call(db, payload)
        elif kind == "process-recording":
            await coordinator.process_recording(db, payload, final_attempt=final_attempt)
        elif kind == "process-transcription":
            await coordinator.process_transcription(db, payload, final_attempt=final_attempt)
        else:
            raise ValueError(f"No handler for job kind {kind}")

    async def run_once(self, kind: str) -> bool:
        """Reserve and run one job of ``kind``. Returns False when none was waiting."""
        async with self.session_factory() as db:
            job = await self.queue.reserve(db, kind, self.worker_id)
            if job is None:
                return False

            job_id = job.id
            raw = dict(job.payload or {})
            final_attempt = job.attempts + 1 >= job.max_attempts

            try:
                payload = parse_payload(kind, raw)
            except ValidationError as e:
                await self._fail(db, kind, job_id, raw, f"Malformed payload: {e}", permanent=True)
                return True

            heartbeat = asyncio.create_task(self._keep_lease(job_id))
            try:
                await self._dispatch(db, kind, payload, final_attempt)
            except PipelineError as e:
                await db.rollback()
                await self._fail(db, kind, job_id, raw, str(e), permanent=not e.retryable)
            except SQLAlchemyError as e:
                await db.rollback()
                await self._fail(db, kind, job_id, raw, f"Database error: {e}", permanent=False)
            except Exception as e:
                logger.exception("Unexpected error in %s job %s", kind, job_id)
                await db.rollback()
                await self._fail(db, kind, job_id, raw, f"{type(e).__name__}: {e}", permanent=False)
            else:
                await self.queue.complete(db, job_id)
            finally:
                heartbeat.cancel()
            return True

    async def _keep_lease(self, job_id) -> None:
        """Renew the job's lease while it runs; steps carry their own timeouts."""
        interval = self.queue.config.lease_seconds / 2
        while True:
            await asyncio.sleep(interval)
            try:
                async with self.session_factory() as db:
                    if not await self.queue.extend_lease(db, job_id, self.worker_id):
                        logger.warning("Lost lease on job %s", job_id)
                        return
            except SQLAlchemyError as e:
                logger.error("Could not renew lease on job %s: %s", job_id, e)

    async def _fail(self, db: AsyncSession, kind: str, job_id, payload: dict, error: str, permanent: bool) -> None:
        status = await self.queue.fail(db, job_id, error, permanent=permanent)
        if status == "failed":
            await self.services.coordinator.on_job_failed(db, kind, payload, error)

    async def _poll(self, kind: str, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                worked = await self.run_once(kind)
            except SQLAlchemyError as e:
                logger.error("Queue unavailable while polling %s: %s", kind, e)
                worked = False
            if not worked:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def recover_stalled(self) -> Dict[str, int]:
        async with self.session_factory() as db:
            return await self.queue.recover_stalled(db, on_failed=self.services.coordinator.on_job_failed)

    async def _stalled_loop(self, stop: asyncio.Event) -> None:
        interval = settings.JOB_STALLED_INTERVAL_SECONDS
        while not stop.is_set():
            try:
                counts = await self.recover_stalled()
                if counts["recovered"] or counts["failed"]:
                    logger.info("Stalled check: %s", counts)
            except SQLAlchemyError as e:
                logger.error("Stalled check failed: %s", e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run(self, stop: asyncio.Event, concurrency: Dict[str, int] | None = None) -> None:
        concurrency = concurrency or default_concurrency()
        tasks = [
            asyncio.create_task(self._poll(kind, stop), name=f"{kind}-{n}")
            for kind, count in concurrency.items()
            for n in range(count)
        ]
        tasks.append(asyncio.create_task(self._stalled_loop(stop), name="stalled-check"))
        logger.info("Worker %s started: %s", self.worker_id, concurrency)

        await stop.wait()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Worker %s stopped", self.worker_id)


async def _main() -> None:
    services = build_services()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await JobWorker(services).run(stop)
    finally:
        await services.aclose()
        await engine.dispose()


def main() -> None:
    configure_logging()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
