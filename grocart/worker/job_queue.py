"""Scrape job queue: per-target dedup, single worker, retries with backoff.

Durable mode keeps jobs in Redis:

- ``<ns>:job:<job_id>``  hash with the job's fields
- ``<ns>:waiting``       sorted set, score = priority rank then enqueue time
- ``<ns>:delayed``       sorted set of retries, score = ready-at (ms)
- ``<ns>:active``        set of job ids being processed
- ``<ns>:stats``         completed/failed counters

Jobs a stopped or crashed worker left in ``active`` are requeued when the
next queue initializes against the same namespace.

When Redis is unreachable at startup the queue runs in direct mode: every
enqueue starts the handler immediately in-process, without retries or
persistence.
"""

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis

from grocart import metrics
from grocart.config import settings

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"high": 1, "normal": 5, "low": 10}
TERMINAL_STATUSES = frozenset({"completed", "failed"})
TRIGGERS = ("user_search", "weekly_refresh", "manual")

_PRIORITY_SPAN = 10**13  # larger than any epoch-millisecond timestamp

JobHandler = Callable[["ScrapeJob"], Awaitable[Optional[dict]]]


def job_id_for(target_key: str) -> str:
    """Deterministic job id, so concurrent enqueues of one target collide."""
    return f"scrape-{target_key}"


def _iso(ts: Optional[float]) -> Optional[str]:
    return datetime.utcfromtimestamp(ts).isoformat() + "Z" if ts else None


@dataclass
class ScrapeJob:
    """One unit of scrape work for a target key (a store or a ZIP code)."""

    job_id: str
    target_key: str
    kind: str
    payload: dict = field(default_factory=dict)
    trigger: str = "user_search"
    priority: str = "normal"
    status: str = "waiting"
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    result: Optional[dict] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def sort_score(self) -> float:
        return PRIORITY_RANK[self.priority] * _PRIORITY_SPAN + int(self.created_at * 1000)

    def to_mapping(self) -> dict[str, str]:
        """Flat string mapping for a Redis hash."""
        return {
            "job_id": self.job_id,
            "target_key": self.target_key,
            "kind": self.kind,
            "payload": json.dumps(self.payload),
            "trigger": self.trigger,
            "priority": self.priority,
            "status": self.status,
            "attempts": str(self.attempts),
            "max_attempts": str(self.max_attempts),
            "last_error": self.last_error or "",
            "result": json.dumps(self.result) if self.result is not None else "",
            "created_at": repr(self.created_at),
            "started_at": repr(self.started_at) if self.started_at else "",
            "finished_at": repr(self.finished_at) if self.finished_at else "",
        }

    @classmethod
    def from_mapping(cls, data: dict[str, str]) -> "ScrapeJob":
        def _float(key: str) -> Optional[float]:
            value = data.get(key)
            return float(value) if value else None

        return cls(
            job_id=data["job_id"],
            target_key=data["target_key"],
            kind=data.get("kind", ""),
            payload=json.loads(data["payload"]) if data.get("payload") else {},
            trigger=data.get("trigger", "user_search"),
            priority=data.get("priority", "normal"),
            status=data.get("status", "waiting"),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or 3),
            last_error=data.get("last_error") or None,
            result=json.loads(data["result"]) if data.get("result") else None,
            created_at=_float("created_at") or time.time(),
            started_at=_float("started_at"),
            finished_at=_float("finished_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "target_key": self.target_key,
            "kind": self.kind,
            "trigger": self.trigger,
            "priority": self.priority,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


@dataclass
class EnqueueResult:
    """Handle returned from enqueue; ``created`` is False for a deduplicated call."""

    job: ScrapeJob
    created: bool
    mode: str

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def status(self) -> str:
        return self.job.status


class RedisQueueBackend:
    """Durable job storage on Redis."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[redis.Redis] = None,
        namespace: Optional[str] = None,
        retention_seconds: Optional[int] = None,
    ):
        """
        Initialize backend.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            redis_client: Pre-built client
            namespace: Key prefix (defaults to settings.queue_namespace)
            retention_seconds: How long terminal jobs stay readable
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = redis_client
        self._owns_redis = redis_client is None
        self.namespace = namespace or settings.queue_namespace
        self.retention_seconds = retention_seconds or settings.queue_job_retention_seconds

        self.waiting_key = f"{self.namespace}:waiting"
        self.delayed_key = f"{self.namespace}:delayed"
        self.active_key = f"{self.namespace}:active"
        self.stats_key = f"{self.namespace}:stats"

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

    def job_key(self, job_id: str) -> str:
        return f"{self.namespace}:job:{job_id}"

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    async def get(self, job_id: str) -> Optional[ScrapeJob]:
        client = await self._get_redis()
        data = await client.hgetall(self.job_key(job_id))
        if not data or "target_key" not in data:
            return None
        return ScrapeJob.from_mapping(data)

    async def save(self, job: ScrapeJob) -> None:
        client = await self._get_redis()
        await client.hset(self.job_key(job.job_id), mapping=job.to_mapping())

    async def create(self, job: ScrapeJob) -> tuple[ScrapeJob, bool]:
        """
        Create ``job`` unless a non-terminal job with the same id exists.

        Returns:
            (job, created) where job is the existing one when created is False
        """
        client = await self._get_redis()
        key = self.job_key(job.job_id)

        for _ in range(2):
            if await client.hsetnx(key, "job_id", job.job_id):
                await client.persist(key)
                await client.hset(key, mapping=job.to_mapping())
                await client.zadd(self.waiting_key, {job.job_id: job.sort_score})
                return job, True

            existing = await self.get(job.job_id)
            if existing is not None and not existing.is_terminal:
                return existing, False

            # Terminal (or half-written) leftover: replace it
            await client.delete(key)

        existing = await self.get(job.job_id)
        return existing or job, False

    async def claim(self) -> Optional[ScrapeJob]:
        """Move due retries back to waiting, then pop the highest-priority job."""
        client = await self._get_redis()
        now_ms = int(time.time() * 1000)

        for job_id in await client.zrangebyscore(self.delayed_key, 0, now_ms):
            if await client.zrem(self.delayed_key, job_id):
                job = await self.get(job_id)
                if job is not None:
                    await client.zadd(self.waiting_key, {job_id: job.sort_score})

        while True:
            popped = await client.zpopmin(self.waiting_key, 1)
            if not popped:
                return None
            job = await self.get(popped[0][0])
            if job is not None:
                break

        job.status = "active"
        job.attempts += 1
        job.started_at = time.time()
        await self.save(job)
        await client.sadd(self.active_key, job.job_id)
        return job

    async def retry_later(self, job: ScrapeJob, delay_seconds: float) -> None:
        client = await self._get_redis()
        job.status = "waiting"
        await self.save(job)
        await client.srem(self.active_key, job.job_id)
        ready_at = int((time.time() + delay_seconds) * 1000)
        await client.zadd(self.delayed_key, {job.job_id: ready_at})

    async def requeue(self, job: ScrapeJob) -> None:
        """Return an interrupted job to the waiting set."""
        client = await self._get_redis()
        job.status = "waiting"
        job.started_at = None
        await self.save(job)
        await client.srem(self.active_key, job.job_id)
        await client.zadd(self.waiting_key, {job.job_id: job.sort_score})

    async def take_orphans(self) -> list[ScrapeJob]:
        """
        Empty the active set and return the jobs it still referenced.

        Only safe while no worker is running against this namespace.
        """
        client = await self._get_redis()
        orphans = []
        for job_id in await client.smembers(self.active_key):
            await client.srem(self.active_key, job_id)
            job = await self.get(job_id)
            if job is not None and not job.is_terminal:
                orphans.append(job)
        return sorted(orphans, key=lambda job: job.sort_score)

    async def finish(self, job: ScrapeJob) -> None:
        client = await self._get_redis()
        await self.save(job)
        await client.expire(self.job_key(job.job_id), self.retention_seconds)
        await client.srem(self.active_key, job.job_id)
        await client.hincrby(self.stats_key, job.status, 1)

    async def counts(self) -> dict[str, int]:
        client = await self._get_redis()
        stats = await client.hgetall(self.stats_key)
        return {
            "waiting": await client.zcard(self.waiting_key) + await client.zcard(self.delayed_key),
            "active": await client.scard(self.active_key),
            "completed": int(stats.get("completed", 0)),
            "failed": int(stats.get("failed", 0)),
        }

    async def active_jobs(self) -> list[ScrapeJob]:
        client = await self._get_redis()
        jobs = [await self.get(job_id) for job_id in sorted(await client.smembers(self.active_key))]
        return [job for job in jobs if job is not None]

    async def waiting_jobs(self, limit: int = 20) -> list[ScrapeJob]:
        client = await self._get_redis()
        job_ids = await client.zrange(self.waiting_key, 0, limit - 1)
        jobs = [await self.get(job_id) for job_id in job_ids]
        return [job for job in jobs if job is not None]


class ScrapeJobQueue:
    """
    Enqueue/process/subscribe contract over the Redis backend.

    One worker task drains the queue, so at most one job runs at a time.
    """

    def __init__(
        self,
        handler: Optional[JobHandler] = None,
        backend: Optional[RedisQueueBackend] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        history_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        wait_interval: float = 0.1,
    ):
        """
        Initialize queue.

        Args:
            handler: Async callable executing one job, returning a result dict
            backend: Durable backend (Redis at settings.redis_url when omitted)
            max_attempts: Total attempts per job
            backoff_seconds: First retry delay; doubles per attempt
            history_size: Terminal jobs kept for status reports
            poll_interval: Worker sleep when the queue is empty
            wait_interval: Poll step used by wait_for
        """
        self._handler = handler
        self._backend = backend
        self.max_attempts = max_attempts or settings.queue_max_attempts
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.queue_backoff_seconds
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.queue_poll_interval_seconds
        )
        self.wait_interval = wait_interval
        self.history: deque[dict] = deque(maxlen=history_size or settings.queue_history_size)

        self.mode = "uninitialized"
        self._processing: set[str] = set()
        self._local_jobs: dict[str, ScrapeJob] = {}
        self._finished: dict[str, ScrapeJob] = {}
        self._direct_stats = {"completed": 0, "failed": 0}
        self.retention_seconds = settings.queue_job_retention_seconds
        self._direct_tasks: set[asyncio.Task] = set()
        self._listeners: dict[str, list[Callable]] = {"completed": [], "failed": []}
        self._worker: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_durable(self) -> bool:
        return self.mode == "durable"

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    def subscribe(self, event: str, callback: Callable[[ScrapeJob], Any]) -> None:
        """Register a callback for "completed" or "failed" jobs."""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    async def initialize(self) -> str:
        """Connect to the broker; fall back to direct mode if it is unreachable."""
        backend = self._backend or RedisQueueBackend()
        try:
            await backend.ping()
        except Exception as e:
            logger.warning(f"Job queue broker unavailable ({e}); running jobs directly in-process")
            self._backend = None
            self.mode = "direct"
            return self.mode

        self._backend = backend
        self.mode = "durable"
        await self._recover_orphans()
        logger.info("Job queue initialized (durable, Redis)")
        return self.mode

    async def _recover_orphans(self) -> None:
        """Requeue jobs a previous worker left active; the lost attempt counts."""
        for job in await self._backend.take_orphans():
            if job.attempts < job.max_attempts:
                await self._backend.requeue(job)
                logger.warning(
                    f"Recovered {job.job_id} left active by a previous worker "
                    f"(attempt {job.attempts}/{job.max_attempts})"
                )
                continue

            job.status = "failed"
            job.last_error = job.last_error or "Worker stopped while the job was active"
            job.finished_at = time.time()
            await self._backend.finish(job)
            self._record(job, 0.0)
            logger.error(f"Job {job.job_id} was interrupted on its last attempt; marking failed")

    async def start(self) -> None:
        """Start the single worker (durable mode only)."""
        if self.mode == "uninitialized":
            await self.initialize()
        if not self.is_durable or self._worker is not None:
            return
        self._running = True
        self._worker = asyncio.create_task(self._worker_loop(), name="scrape-queue-worker")
        logger.info("Job queue worker started")

    async def stop(self) -> None:
        self._running = False
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        for task in list(self._direct_tasks):
            task.cancel()
        if self._direct_tasks:
            await asyncio.gather(*self._direct_tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.stop()
        if self._backend is not None:
            await self._backend.close()

    async def enqueue(
        self,
        target_key: str,
        kind: str,
        payload: Optional[dict] = None,
        trigger: str = "user_search",
        priority: str = "normal",
    ) -> EnqueueResult:
        """
        Idempotently enqueue work for a target.

        If a waiting/active job already exists for ``target_key`` it is
        returned unchanged; otherwise a new waiting job is created.

        Args:
            target_key: Dedup key (e.g. "store:12", "zip:07001")
            kind: Job type understood by the handler
            payload: JSON-serializable job arguments
            trigger: user_search, weekly_refresh or manual
            priority: high, normal or low

        Returns:
            EnqueueResult with the (new or existing) job
        """
        if not target_key:
            raise ValueError("target_key is required")
        if priority not in PRIORITY_RANK:
            raise ValueError(f"Unknown priority: {priority}")
        if self.mode == "uninitialized":
            await self.initialize()

        job = ScrapeJob(
            job_id=job_id_for(target_key),
            target_key=target_key,
            kind=kind,
            payload=payload or {},
            trigger=trigger,
            priority=priority,
            max_attempts=self.max_attempts,
        )

        if not self.is_durable:
            return self._enqueue_direct(job)

        stored, created = await self._backend.create(job)
        event = "enqueued" if created else "deduplicated"
        metrics.scrape_jobs_total.labels(kind=kind, event=event).inc()
        if created:
            logger.info(f"Enqueued {stored.job_id} ({trigger}, {priority})")
        else:
            logger.debug(f"Job for {target_key} already {stored.status}; not enqueuing again")
        return EnqueueResult(stored, created, self.mode)

    def _enqueue_direct(self, job: ScrapeJob) -> EnqueueResult:
        existing = self._local_jobs.get(job.job_id)
        if existing is not None and not existing.is_terminal:
            metrics.scrape_jobs_total.labels(kind=job.kind, event="deduplicated").inc()
            return EnqueueResult(existing, False, self.mode)

        job.status = "active"
        job.attempts = 1
        job.started_at = time.time()
        self._local_jobs[job.job_id] = job
        self._finished.pop(job.job_id, None)
        self._processing.add(job.target_key)
        metrics.scrape_jobs_total.labels(kind=job.kind, event="enqueued").inc()

        task = asyncio.create_task(self._run_direct(job))
        self._direct_tasks.add(task)
        task.add_done_callback(self._direct_tasks.discard)
        return EnqueueResult(job, True, self.mode)

    async def _run_direct(self, job: ScrapeJob) -> None:
        started = time.monotonic()
        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            job.status = "failed"
            job.last_error = "Cancelled at shutdown"
            raise
        except Exception as e:
            job.status = "failed"
            job.last_error = str(e) or type(e).__name__
            logger.error(f"Direct job {job.job_id} failed: {job.last_error}")
        else:
            job.status = "completed"
            job.result = result
        finally:
            job.finished_at = time.time()
            self._processing.discard(job.target_key)
            self._local_jobs.pop(job.job_id, None)
            self._finished[job.job_id] = job
            self._prune_finished()

        self._direct_stats[job.status] += 1
        self._record(job, time.monotonic() - started)
        await self._emit(job)

    def _prune_finished(self) -> None:
        """Forget direct-mode jobs that finished longer ago than the retention window."""
        cutoff = time.time() - self.retention_seconds
        # Insertion order is finish order
        for job_id, job in list(self._finished.items()):
            if job.finished_at >= cutoff:
                break
            del self._finished[job_id]

    async def process_next(self) -> Optional[ScrapeJob]:
        """
        Claim and run the next job (durable mode).

        Returns:
            The processed job, or None when nothing was waiting
        """
        if not self.is_durable:
            return None

        job = await self._backend.claim()
        if job is None:
            return None

        self._processing.add(job.target_key)
        started = time.monotonic()
        try:
            result = await self._execute(job)
        except asyncio.CancelledError:
            # Shutdown is not a failed attempt
            job.attempts -= 1
            await self._backend.requeue(job)
            logger.warning(f"Job {job.job_id} interrupted; returned to the queue")
            raise
        except Exception as e:
            await self._handle_failure(job, e, time.monotonic() - started)
        else:
            job.status = "completed"
            job.result = result
            job.finished_at = time.time()
            await self._backend.finish(job)
            self._record(job, time.monotonic() - started)
            await self._emit(job)
        finally:
            self._processing.discard(job.target_key)
        return job

    async def _execute(self, job: ScrapeJob) -> Optional[dict]:
        if self._handler is None:
            raise RuntimeError("No job handler configured")
        logger.info(f"Processing {job.job_id} (attempt {job.attempts}/{job.max_attempts})")
        return await self._handler(job)

    async def _handle_failure(self, job: ScrapeJob, error: Exception, duration: float) -> None:
        job.last_error = str(error) or type(error).__name__
        retryable = getattr(error, "retryable", True)

        if retryable and job.attempts < job.max_attempts:
            delay = self.backoff_seconds * (2 ** (job.attempts - 1))
            await self._backend.retry_later(job, delay)
            metrics.scrape_jobs_total.labels(kind=job.kind, event="retried").inc()
            logger.warning(
                f"Job {job.job_id} failed (attempt {job.attempts}/{job.max_attempts}): "
                f"{job.last_error}; retrying in {delay:.1f}s"
            )
            return

        job.status = "failed"
        job.finished_at = time.time()
        await self._backend.finish(job)
        logger.error(
            f"Job {job.job_id} failed permanently after {job.attempts} attempt(s): {job.last_error}"
        )
        self._record(job, duration)
        await self._emit(job)

    def _record(self, job: ScrapeJob, duration: float) -> None:
        metrics.scrape_jobs_total.labels(kind=job.kind, event=job.status).inc()
        metrics.scrape_job_duration_seconds.labels(kind=job.kind).observe(duration)
        entry = job.to_dict()
        entry["duration_seconds"] = round(duration, 3)
        self.history.append(entry)

    async def _emit(self, job: ScrapeJob) -> None:
        for callback in self._listeners.get(job.status, []):
            try:
                outcome = callback(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Queue listener failed for {job.job_id}")

    async def _worker_loop(self) -> None:
        while self._running:
            try:
                job = await self.process_next()
            except Exception as e:
                logger.error(f"Job queue worker error: {e}", exc_info=True)
                job = None
            if job is None:
                await asyncio.sleep(self.poll_interval)

    async def get_job(self, job_id: str) -> Optional[ScrapeJob]:
        if self.is_durable:
            return await self._backend.get(job_id)
        return self._local_jobs.get(job_id) or self._finished.get(job_id)

    async def wait_for(self, job_ids: list[str], timeout: float) -> dict[str, Optional[ScrapeJob]]:
        """
        Poll until every job is terminal or ``timeout`` seconds pass.

        Returns:
            Latest known state of each job (None if it no longer exists)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        pending = set(job_ids)
        latest: dict[str, Optional[ScrapeJob]] = {}

        while True:
            for job_id in list(pending):
                job = await self.get_job(job_id)
                latest[job_id] = job
                if job is None or job.is_terminal:
                    pending.discard(job_id)

            remaining = deadline - loop.time()
            if not pending or remaining <= 0:
                return latest
            await asyncio.sleep(min(self.wait_interval, remaining))

    async def get_status(self) -> dict[str, Any]:
        """Counts, in-flight targets, active/waiting jobs and recent history."""
        if self.is_durable:
            counts = await self._backend.counts()
            active = await self._backend.active_jobs()
            waiting = await self._backend.waiting_jobs(limit=20)
            processing = sorted({job.target_key for job in active} | self._processing)
        else:
            active = list(self._local_jobs.values())
            counts = {"waiting": 0, "active": len(active), **self._direct_stats}
            waiting = []
            processing = sorted(self._processing)

        metrics.scrape_queue_depth.set(counts["waiting"])
        return {
            "mode": self.mode,
            "counts": counts,
            "processing_targets": processing,
            "active_jobs": [job.to_dict() for job in active],
            "waiting_jobs": [job.to_dict() for job in waiting],
            "recent_history": list(self.history)[-20:][::-1],
        }
