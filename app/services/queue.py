"""Durable pipeline job queue backed by the ``jobs`` table.

At-least-once delivery: a reserved job carries a lease, and a job whose
lease expires without ``complete``/``fail`` is returned to the pool by
``recover_stalled``. Failed attempts are rescheduled with exponential
backoff until ``max_attempts`` is reached.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.job import Job, JOB_KINDS

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"

FailedHook = Callable[[AsyncSession, str, dict, str], Awaitable[None]]


@dataclass
class QueueConfig:
    lease_seconds: float = 30.0
    max_stalled_count: int = 1
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    keep_completed: int = 10
    keep_failed: int = 5

    @classmethod
    def from_settings(cls) -> "QueueConfig":
        return cls(
            lease_seconds=settings.JOB_LEASE_SECONDS,
            max_stalled_count=settings.JOB_MAX_STALLED_COUNT,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_seconds=settings.JOB_BACKOFF_SECONDS,
            keep_completed=settings.JOB_KEEP_COMPLETED,
            keep_failed=settings.JOB_KEEP_FAILED,
        )


class JobQueue:
    """FIFO-within-kind queue with delay, leases and retry backoff."""

    def __init__(self, config: QueueConfig | None = None):
        self.config = config or QueueConfig.from_settings()

    async def enqueue(
        self,
        db: AsyncSession,
        kind: str,
        payload: Dict[str, Any],
        delay: float = 0,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        commit: bool = True,
    ) -> Job:
        """Add a job; it becomes visible no earlier than ``now + delay``."""
        if kind not in JOB_KINDS:
            raise ValueError(f"Unknown job kind: {kind}")

        now = datetime.utcnow()
        job = Job(
            kind=kind,
            payload=payload,
            status="pending",
            attempts=0,
            max_attempts=max_attempts or self.config.max_attempts,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else self.config.backoff_seconds,
            available_at=now + timedelta(seconds=max(delay, 0)),
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        if commit:
            await db.commit()
        else:
            await db.flush()

        logger.info("Job enqueued: kind=%s id=%s delay=%ss", kind, job.id, delay)
        return job

    async def reserve(self, db: AsyncSession, kind: str, worker_id: str) -> Job | None:
        """Lease the oldest visible pending job of ``kind``.

        The claim is a conditional UPDATE on ``status='pending'`` so two
        workers racing for the same row cannot both win it.
        """
        now = datetime.utcnow()
        candidates = await db.execute(
            select(Job.id)
            .where(
                and_(
                    Job.kind == kind,
                    Job.status == "pending",
                    Job.available_at <= now,
                )
            )
            .order_by(Job.available_at, Job.created_at)
            .limit(5)
            .with_for_update(skip_locked=True)
        )

        for job_id in candidates.scalars().all():
            claimed = await db.execute(
                update(Job)
                .where(and_(Job.id == job_id, Job.status == "pending"))
                .values(
                    status="active",
                    worker_id=worker_id,
                    lease_expires_at=now + timedelta(seconds=self.config.lease_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                await db.commit()
                job = await self.get(db, job_id)
                logger.info("Job reserved: kind=%s id=%s worker=%s", kind, job_id, worker_id)
                return job

        await db.commit()
        return None

    async def extend_lease(self, db: AsyncSession, job_id: UUID, worker_id: str) -> bool:
        """Push out the lease of a job this worker still holds."""
        now = datetime.utcnow()
        result = await db.execute(
            update(Job)
            .where(and_(Job.id == job_id, Job.status == "active", Job.worker_id == worker_id))
            .values(lease_expires_at=now + timedelta(seconds=self.config.lease_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def get(self, db: AsyncSession, job_id: UUID) -> Job | None:
        result = await db.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def complete(self, db: AsyncSession, job_id: UUID) -> None:
        now = datetime.utcnow()
        await db.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(status="completed", lease_expires_at=None, finished_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._prune(db, "completed", self.config.keep_completed)
        await db.commit()
        logger.info("Job completed: id=%s", job_id)

    async def fail(self, db: AsyncSession, job_id: UUID, error: str, permanent: bool = False) -> str:
        """Record a failed attempt. Returns the job's new status.

        Reschedules with ``backoff * 2^(attempts-1)`` unless the failure is
        permanent or the attempt budget is spent.
        """
        job = await self.get(db, job_id)
        if not job:
            logger.warning("fail() for unknown job id=%s", job_id)
            return "missing"

        now = datetime.utcnow()
        job.attempts += 1
        job.last_error = error[:2000]
        job.lease_expires_at = None
        job.updated_at = now

        if permanent or job.attempts >= job.max_attempts:
            job.status = "failed"
            job.finished_at = now
            logger.error(
                "Job failed permanently (attempt %d/%d, permanent=%s): kind=%s id=%s error=%s",
                job.attempts,
                job.max_attempts,
                permanent,
                job.kind,
                job_id,
                error[:200],
            )
        else:
            delay = job.backoff_seconds * (2 ** (job.attempts - 1))
            job.status = "pending"
            job.available_at = now + timedelta(seconds=delay)
            logger.warning(
                "Job failed (attempt %d/%d), retrying in %.1fs: kind=%s id=%s error=%s",
                job.attempts,
                job.max_attempts,
                delay,
                job.kind,
                job_id,
                error[:200],
            )

        await db.flush()
        if job.status == "failed":
            await self._prune(db, "failed", self.config.keep_failed)
        await db.commit()
        return job.status

    async def recover_stalled(self, db: AsyncSession, on_failed: FailedHook | None = None) -> Dict[str, int]:
        """Return expired leases to the pool; fail jobs that stalled too often.

        ``on_failed(db, kind, payload, error)`` runs for each job failed here.
        """
        now = datetime.utcnow()
        result = await db.execute(
            select(Job).where(
                and_(Job.status == "active", Job.lease_expires_at < now)
            )
        )
        stalled = result.scalars().all()

        recovered = 0
        exhausted = []
        for job in stalled:
            job.lease_expires_at = None
            job.worker_id = None
            job.updated_at = now
            if job.stalled_count >= self.config.max_stalled_count:
                job.status = "failed"
                job.finished_at = now
                job.last_error = STALLED_ERROR
                exhausted.append((job.kind, dict(job.payload or {})))
                logger.error("Job stalled too many times, failing: kind=%s id=%s", job.kind, job.id)
            else:
                job.stalled_count += 1
                job.status = "pending"
                job.available_at = now
                recovered += 1
                logger.warning("Recovered stalled job: kind=%s id=%s", job.kind, job.id)

        await db.flush()
        if exhausted:
            await self._prune(db, "failed", self.config.keep_failed)
        await db.commit()

        if on_failed is not None:
            for kind, payload in exhausted:
                await on_failed(db, kind, payload, STALLED_ERROR)
        return {"recovered": recovered, "failed": len(exhausted)}

    async def stats(self, db: AsyncSession) -> Dict[str, int]:
        result = await db.execute(select(Job.status, func.count(Job.id)).group_by(Job.status))
        counts = dict(result.all())
        return {
            "waiting": counts.get("pending", 0),
            "active": counts.get("active", 0),
            "completed": counts.get("completed", 0),
            "failed": counts.get("failed", 0),
        }

    async def _prune(self, db: AsyncSession, status: str, keep: int) -> None:
        """Keep only the newest ``keep`` jobs in a finished status."""
        keep_ids = (
            select(Job.id)
            .where(Job.status == status)
            .order_by(Job.finished_at.desc(), Job.created_at.desc())
            .limit(keep)
        )
        await db.execute(
            delete(Job)
            .where(and_(Job.status == status, Job.id.not_in(keep_ids)))
            .execution_options(synchronize_session=False)
        )
