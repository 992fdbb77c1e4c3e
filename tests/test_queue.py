import asyncio
import random

import pytest

from conftest import run
from crm_sync.errors import NotFound
from crm_sync.workers.queue import JobQueue


def test_enqueue_creates_queued_job(ctx, clock):
    job_id = run(ctx.queue.enqueue("SYNC_CONTACTS", {"page": 1}, correlation_id="c-1", delay_sec=60))
    job = run(ctx.queue.get_job(job_id))
    assert job["status"] == "QUEUED"
    assert job["attempts"] == 0
    assert job["maxAttempts"] == 3
    assert job["correlationId"] == "c-1"
    assert job["nextRunAt"].startswith("2026-03-02T09:01:00")


def test_claim_only_due_jobs_oldest_first(ctx, clock):
    first = run(ctx.queue.enqueue("SYNC_CONTACTS", {}))
    clock.advance(1)
    second = run(ctx.queue.enqueue("SYNC_PRODUCTS", {}))
    later = run(ctx.queue.enqueue("SYNC_PURCHASES", {}, delay_sec=300))

    jobs = run(ctx.queue.claim_due_jobs(10, "w1"))
    assert [j.id for j in jobs] == [first, second]
    assert all(j.status == "RUNNING" and j.claim_token for j in jobs)
    assert run(ctx.queue.get_job(later))["status"] == "QUEUED"

    # already RUNNING; nothing left to claim
    assert run(ctx.queue.claim_due_jobs(10, "w1")) == []


def test_concurrent_claimers_get_a_job_at_most_once(ctx):
    run(ctx.queue.enqueue("SYNC_CONTACTS", {}))
    other = JobQueue(ctx.queue._sessions, settings=ctx.settings, clock=ctx.clock)

    async def both():
        return await asyncio.gather(ctx.queue.claim_due_jobs(5, "a"), other.claim_due_jobs(5, "b"))

    a, b = run(both())
    assert len(a) + len(b) == 1


def test_complete_counts_the_run_and_requires_the_claim(ctx):
    job_id = run(ctx.queue.enqueue("SYNC_CONTACTS", {}))
    (job,) = run(ctx.queue.claim_due_jobs(1))

    assert run(ctx.queue.complete(job_id, {"ok": True}, claim_token="someone-else")) is False
    assert run(ctx.queue.complete(job_id, {"ok": True}, claim_token=job.claim_token)) is True

    done = run(ctx.queue.get_job(job_id))
    assert done["status"] == "DONE"
    assert done["attempts"] == 1
    assert done["result"] == {"ok": True}


def test_backoff_grows_and_is_capped(ctx):
    q = ctx.queue
    assert [q.backoff(n) for n in (1, 2, 3)] == [30.0, 60.0, 120.0]
    assert q.backoff(20) == ctx.settings.JOB_BACKOFF_MAX_SEC


def test_backoff_jitter_stays_within_bounds(ctx):
    q = JobQueue(ctx.queue._sessions, settings=ctx.settings, rng=random.Random(7))
    q.jitter = 0.2
    for _ in range(50):
        assert 24.0 <= q.backoff(1) <= 36.0


def test_retry_then_fail_writes_dead_letter(ctx, clock):
    job_id = run(ctx.queue.enqueue("SYNC_CONTACTS", {"page": 3}, correlation_id="sync"))
    next_runs = []
    for expected in ("QUEUED", "QUEUED", "FAILED"):
        (job,) = run(ctx.queue.claim_due_jobs(1))
        status = run(ctx.queue.retry_or_fail(job_id, "HTTP 503", claim_token=job.claim_token))
        assert status == expected
        snapshot = run(ctx.queue.get_job(job_id))
        next_runs.append(snapshot["nextRunAt"])
        clock.advance(3600)

    failed = run(ctx.queue.get_job(job_id))
    assert failed["attempts"] == 3
    assert failed["error"] == "HTTP 503"
    assert next_runs[0] < next_runs[1]

    (dl,) = run(ctx.queue.list_dead_letters())
    assert dl["jobId"] == job_id
    assert dl["kind"] == "SYNC_CONTACTS"
    assert dl["payload"] == {"page": 3}
    assert dl["attempts"] == 3


def test_fail_is_terminal_on_first_run(ctx):
    job_id = run(ctx.queue.enqueue("CREATE_DELIVERY_NOTE", {"shipmentId": "S-1"}))
    (job,) = run(ctx.queue.claim_due_jobs(1))
    assert run(ctx.queue.fail(job_id, "visual check required", claim_token=job.claim_token)) == "FAILED"
    assert run(ctx.queue.get_job(job_id))["attempts"] == 1
    assert len(run(ctx.queue.list_dead_letters())) == 1


def test_stale_running_job_is_reclaimed_and_late_writer_is_ignored(ctx, clock):
    job_id = run(ctx.queue.enqueue("SYNC_CONTACTS", {}))
    (job,) = run(ctx.queue.claim_due_jobs(1))

    clock.advance(ctx.settings.JOB_LEASE_SEC + 1)
    assert run(ctx.queue.reclaim_stale()) == 1
    reclaimed = run(ctx.queue.get_job(job_id))
    assert reclaimed["status"] == "QUEUED"
    assert reclaimed["attempts"] == 1
    assert "lease expired" in reclaimed["error"]

    # the original runner finishing late must not overwrite anything
    assert run(ctx.queue.complete(job_id, {"late": True}, claim_token=job.claim_token)) is False
    assert run(ctx.queue.retry_or_fail(job_id, "late", claim_token=job.claim_token)) is None


def test_replay_dead_letter(ctx):
    job_id = run(ctx.queue.enqueue("SYNC_CONTACTS", {"page": 2}, correlation_id="corr"))
    (job,) = run(ctx.queue.claim_due_jobs(1))
    run(ctx.queue.fail(job_id, "boom", claim_token=job.claim_token))
    (dl,) = run(ctx.queue.list_dead_letters())

    new_id = run(ctx.queue.replay_dead_letter(dl["id"]))
    fresh = run(ctx.queue.get_job(new_id))
    assert fresh["status"] == "QUEUED"
    assert fresh["payload"] == {"page": 2}
    assert fresh["correlationId"] == "corr"
    assert run(ctx.queue.list_dead_letters())[0]["replayedJobId"] == new_id

    with pytest.raises(NotFound):
        run(ctx.queue.replay_dead_letter(999))


def test_listing_and_counts(ctx):
    a = run(ctx.queue.enqueue("SYNC_CONTACTS", {}))
    run(ctx.queue.enqueue("SYNC_PRODUCTS", {}))
    (job, _) = run(ctx.queue.claim_due_jobs(2))
    run(ctx.queue.complete(job.id, {}, claim_token=job.claim_token))

    assert run(ctx.queue.counts()) == {"DONE": 1, "RUNNING": 1}
    assert [j["kind"] for j in run(ctx.queue.list_jobs(kind="SYNC_PRODUCTS"))] == ["SYNC_PRODUCTS"]
    assert [r["id"] for r in run(ctx.queue.recent_runs())] == [job.id]
    assert a in {j["id"] for j in run(ctx.queue.list_jobs())}
