# ---------------------------
# crm_sync/workers/queue.py
# ---------------------------
"""
Durable polling job queue on the `jobs` table.

QUEUED → RUNNING is a conditional UPDATE per job, so two dispatchers polling
the same table never both win a job. Completion calls carry the claim token;
once the stale sweep has re-queued a job, the original runner can no longer
write its outcome.
"""
from __future__ import annotations

import logging
import random
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_sync.config import Settings, settings as default_settings
from crm_sync.db import utcnow
from crm_sync.errors import NotFound, StorageUnavailable
from crm_sync.models.jobs import DONE, FAILED, QUEUED, RUNNING, DeadLetter, Job

logger = logging.getLogger("uvicorn.error")

ERROR_MAX_LEN = 2000


def _kind_value(kind: Any) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


class JobQueue:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ):
        cfg = settings or default_settings
        self._sessions = sessions
        self.default_max_attempts = cfg.JOB_MAX_ATTEMPTS
        self.backoff_base = cfg.JOB_BACKOFF_BASE_SEC
        self.backoff_max = cfg.JOB_BACKOFF_MAX_SEC
        self.jitter = cfg.JOB_BACKOFF_JITTER
        self.lease_sec = cfg.JOB_LEASE_SEC
        self._now = clock or utcnow
        self._rng = rng or random.Random()

    # ---------------------------
    # Backoff
    # ---------------------------

    def backoff(self, attempts: int) -> float:
        """Seconds to wait after the `attempts`-th failed run."""
        delay = self.backoff_base * (2 ** max(attempts - 1, 0))
        delay *= 1 + self.jitter * (2 * self._rng.random() - 1)
        return max(0.0, min(delay, self.backoff_max))

    # ---------------------------
    # Producer side
    # ---------------------------

    async def enqueue(
        self,
        kind: Any,
        payload: Dict[str, Any] | None = None,
        *,
        correlation_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        delay_sec: float = 0,
    ) -> str:
        now = self._now()
        job = Job(
            id=uuid.uuid4().hex,
            kind=_kind_value(kind),
            payload=payload or {},
            status=QUEUED,
            attempts=0,
            max_attempts=max_attempts or self.default_max_attempts,
            next_run_at=now + timedelta(seconds=max(delay_sec, 0)),
            correlation_id=correlation_id,
            created_at=now,
            updated_at=now,
        )
        job_id = job.id
        try:
            async with self._sessions() as session:
                session.add(job)
                await session.commit()
        except DBAPIError as e:
            logger.error("[QUEUE] enqueue %s failed: %s", job.kind, e)
            raise StorageUnavailable(f"could not enqueue {job.kind}: {e}") from e
        logger.info("[QUEUE] enqueued job=%s kind=%s corr=%s delay=%ss", job_id, job.kind, correlation_id, delay_sec)
        return job_id

    # ---------------------------
    # Consumer side
    # ---------------------------

    async def claim_due_jobs(self, limit: int, worker_id: str = "dispatcher") -> List[Job]:
        """Claim up to `limit` due jobs, oldest first. Lost races are skipped."""
        now = self._now()
        async with self._sessions() as session:
            candidates = (
                await session.execute(
                    select(Job.id)
                    .where(Job.status == QUEUED, Job.next_run_at <= now)
                    .order_by(Job.created_at, Job.id)
                    .limit(limit)
                )
            ).scalars().all()

        claimed: List[str] = []
        for job_id in candidates:
            token = uuid.uuid4().hex
            async with self._sessions() as session:
                res = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == QUEUED)
                    .values(
                        status=RUNNING,
                        claim_token=token,
                        claimed_by=worker_id,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            if res.rowcount == 1:
                claimed.append(job_id)

        if not claimed:
            return []
        async with self._sessions() as session:
            jobs = (
                await session.execute(
                    select(Job).where(Job.id.in_(claimed)).order_by(Job.created_at, Job.id)
                )
            ).scalars().all()
        logger.debug("[QUEUE] %s claimed %d/%d due jobs", worker_id, len(jobs), len(candidates))
        return list(jobs)

    def _owned(self, stmt, claim_token: Optional[str]):
        stmt = stmt.where(Job.status == RUNNING)
        if claim_token:
            stmt = stmt.where(Job.claim_token == claim_token)
        return stmt

    async def complete(self, job_id: str, result: Dict[str, Any] | None = None, *, claim_token: Optional[str] = None) -> bool:
        now = self._now()
        stmt = self._owned(update(Job).where(Job.id == job_id), claim_token).values(
            status=DONE,
            result=result,
            error=None,
            attempts=Job.attempts + 1,
            claim_token=None,
            finished_at=now,
            updated_at=now,
        )
        async with self._sessions() as session:
            res = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
        if res.rowcount != 1:
            logger.warning("[QUEUE] complete(%s): job no longer owned by this run", job_id)
            return False
        return True

    async def retry_or_fail(self, job_id: str, error: str, *, claim_token: Optional[str] = None) -> Optional[str]:
        """Count a failed run; re-queue with backoff or fail terminally. Returns the new status."""
        return await self._record_failure(job_id, error, claim_token=claim_token, terminal=False)

    async def fail(self, job_id: str, error: str, *, claim_token: Optional[str] = None) -> Optional[str]:
        """Fail without retrying; writes a dead letter."""
        return await self._record_failure(job_id, error, claim_token=claim_token, terminal=True)

    async def _record_failure(
        self, job_id: str, error: str, *, claim_token: Optional[str], terminal: bool
    ) -> Optional[str]:
        now = self._now()
        error = (error or "unknown error")[:ERROR_MAX_LEN]
        async with self._sessions() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise NotFound(f"job {job_id} not found")
            if job.status != RUNNING or (claim_token and job.claim_token != claim_token):
                logger.warning("[QUEUE] failure for %s ignored: job no longer owned by this run", job_id)
                return None

            token, max_attempts = job.claim_token, job.max_attempts
            attempts = job.attempts + 1
            values: Dict[str, Any] = {
                "attempts": attempts,
                "error": error,
                "claim_token": None,
                "updated_at": now,
            }
            if not terminal and attempts < max_attempts:
                delay = self.backoff(attempts)
                values["status"] = QUEUED
                values["next_run_at"] = max(job.next_run_at, now + timedelta(seconds=delay))
            else:
                values["status"] = FAILED
                values["finished_at"] = now

            stmt = update(Job).where(Job.id == job_id, Job.status == RUNNING)
            stmt = stmt.where(Job.claim_token == token) if token else stmt.where(Job.claim_token.is_(None))
            res = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            if res.rowcount != 1:
                await session.rollback()
                logger.warning("[QUEUE] failure for %s lost a race with another writer", job_id)
                return None

            if values["status"] == FAILED:
                session.add(
                    DeadLetter(
                        job_id=job_id,
                        kind=job.kind,
                        payload=job.payload,
                        correlation_id=job.correlation_id,
                        attempts=attempts,
                        error=error,
                        created_at=now,
                    )
                )
            await session.commit()

        if values["status"] == QUEUED:
            logger.info("[QUEUE] job=%s retry %d/%d at %s: %s", job_id, attempts, max_attempts,
                        values["next_run_at"].isoformat(), error)
        else:
            logger.error("[QUEUE] job=%s FAILED after %d attempt(s): %s", job_id, attempts, error)
        return values["status"]

    async def reclaim_stale(self, lease_sec: float | None = None) -> int:
        """Treat RUNNING jobs older than the lease as a failed run."""
        lease = self.lease_sec if lease_sec is None else lease_sec
        cutoff = self._now() - timedelta(seconds=lease)
        async with self._sessions() as session:
            stale = (
                await session.execute(
                    select(Job.id, Job.claim_token).where(Job.status == RUNNING, Job.started_at < cutoff)
                )
            ).all()
        count = 0
        for job_id, token in stale:
            status = await self._record_failure(
                job_id, f"lease expired after {int(lease)}s", claim_token=token, terminal=False
            )
            if status is not None:
                count += 1
        if count:
            logger.warning("[QUEUE] reclaimed %d stale RUNNING job(s)", count)
        return count

    # ---------------------------
    # Inspection / dead letters
    # ---------------------------

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessions() as session:
            job = await session.get(Job, job_id)
            return job.to_dict() if job else None

    async def list_jobs(
        self, *, status: Optional[str] = None, kind: Optional[str] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        stmt = select(Job)
        if status:
            stmt = stmt.where(Job.status == status)
        if kind:
            stmt = stmt.where(Job.kind == kind)
        stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
        async with self._sessions() as session:
            return [j.to_dict() for j in (await session.execute(stmt)).scalars().all()]

    async def recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        stmt = (
            select(Job)
            .where(Job.status.in_([DONE, FAILED]))
            .order_by(Job.finished_at.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            return [j.to_dict() for j in (await session.execute(stmt)).scalars().all()]

    async def counts(self) -> Dict[str, int]:
        async with self._sessions() as session:
            rows = (await session.execute(select(Job.status, func.count()).group_by(Job.status))).all()
        return {status: n for status, n in rows}

    async def list_dead_letters(self, limit: int = 50) -> List[Dict[str, Any]]:
        stmt = select(DeadLetter).order_by(DeadLetter.id.desc()).limit(limit)
        async with self._sessions() as session:
            return [d.to_dict() for d in (await session.execute(stmt)).scalars().all()]

    async def replay_dead_letter(self, dead_letter_id: int) -> str:
        async with self._sessions() as session:
            dl = await session.get(DeadLetter, dead_letter_id)
            if dl is None:
                raise NotFound(f"dead letter {dead_letter_id} not found")
            kind, payload, corr = dl.kind, dl.payload, dl.correlation_id

        new_id = await self.enqueue(kind, payload, correlation_id=corr)
        async with self._sessions() as session:
            await session.execute(
                update(DeadLetter)
                .where(DeadLetter.id == dead_letter_id)
                .values(replayed_job_id=new_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info("[QUEUE] dead letter %s replayed as job=%s", dead_letter_id, new_id)
        return new_id
