"""
Lifecycle of asynchronous, cancellable background jobs.

Usage
-----
    from app.services.job_manager import JobKind, job_manager

    job_id = await job_manager.create_job(JobKind.MATCHING, customer_ids=[7])
    job_manager.start_in_background(job_id, worker)   # worker(job, token)
    # ... later ...
    job = await job_manager.get_status(job_id)

Jobs move ``pending → running → completed | failed | cancelled`` (a pending
job may also go straight to ``cancelled``) and never leave a terminal state.
All status and counter writes go through one lock; workers observe
cancellation through a ``CancellationToken`` checked at batch boundaries.
"""
from __future__ import annotations

import abc
import asyncio
import copy
import dataclasses
import enum
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from app.config import settings
from app.services.progress import info_event, log_event, progress_broker, step_event
from app.utils.helpers import new_id, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobKind(str, enum.Enum):
    MATCHING = "matching"
    COMPILE = "compile"


_ID_PREFIXES = {JobKind.MATCHING: "tmj", JobKind.COMPILE: "cmp"}


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class JobStep:
    name: str
    status: str = "start"
    started_at: datetime = dataclasses.field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


@dataclasses.dataclass
class Job:
    id: str
    kind: JobKind = JobKind.MATCHING
    status: JobStatus = JobStatus.PENDING
    template_slugs: Optional[List[str]] = None
    customer_ids: Optional[List[int]] = None
    force_recalculate: bool = False
    total_units: int = 0
    processed_units: int = 0
    matched_units: int = 0
    skipped_units: int = 0
    failed_units: int = 0
    created_at: datetime = dataclasses.field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    created_by: Optional[str] = None
    steps: List[JobStep] = dataclasses.field(default_factory=list)
    logs: List[str] = dataclasses.field(default_factory=list)
    result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def partial(self) -> bool:
        """Finished, but some units failed."""
        return self.status == JobStatus.COMPLETED and self.failed_units > 0

    @property
    def elapsed_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or utcnow()
        return round((end - self.started_at).total_seconds(), 2)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class JobCancelled(Exception):
    """Raised inside a worker when it observes a cancellation request."""


class CancellationToken:
    """Cooperative cancellation flag shared between the manager and one worker."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelled()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class JobRepository(abc.ABC):
    """Storage for job records."""

    @abc.abstractmethod
    async def get(self, job_id: str) -> Optional[Job]: ...

    @abc.abstractmethod
    async def put(self, job: Job) -> None: ...

    @abc.abstractmethod
    async def list(self) -> List[Job]: ...

    @abc.abstractmethod
    async def delete(self, job_id: str) -> bool: ...

    @abc.abstractmethod
    async def clear(self) -> int: ...


class InMemoryJobRepository(JobRepository):
    """Process-local job history; lost on restart."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            return self._jobs.get(job_id)

    async def put(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = job

    async def list(self) -> List[Job]:
        async with self._lock:
            return list(self._jobs.values())

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._jobs)
            self._jobs.clear()
            return count


JobWorker = Callable[[Job, CancellationToken], Awaitable[Optional[Dict[str, Any]]]]


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class JobManager:
    """Creates, runs, tracks and cancels background jobs."""

    def __init__(
        self,
        repository: Optional[JobRepository] = None,
        history_limit: Optional[int] = None,
    ) -> None:
        self.repository = repository or InMemoryJobRepository()
        self.history_limit = history_limit if history_limit is not None else settings.JOB_HISTORY_LIMIT
        self._lock = asyncio.Lock()
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Creation / start
    # ------------------------------------------------------------------

    async def create_job(
        self,
        kind: JobKind = JobKind.MATCHING,
        template_slugs: Optional[Sequence[str]] = None,
        customer_ids: Optional[Sequence[int]] = None,
        force_recalculate: bool = False,
        created_by: Optional[str] = None,
    ) -> str:
        """Register a job in ``pending`` and return its id.  Empty scope lists are rejected."""
        if template_slugs is not None and len(template_slugs) == 0:
            raise ValueError("template_slugs must be non-empty when provided")
        if customer_ids is not None and len(customer_ids) == 0:
            raise ValueError("customer_ids must be non-empty when provided")

        job = Job(
            id=new_id(_ID_PREFIXES[kind]),
            kind=kind,
            template_slugs=list(template_slugs) if template_slugs is not None else None,
            customer_ids=list(customer_ids) if customer_ids is not None else None,
            force_recalculate=force_recalculate,
            created_by=created_by,
        )
        await self.repository.put(job)
        self._tokens[job.id] = CancellationToken()
        logger.info("Job %s created (%s)", job.id, kind.value)

        await self.cleanup_old()
        return job.id

    def start_in_background(self, job_id: str, worker: JobWorker) -> asyncio.Task:
        """
        Run *worker* as an asyncio task and return immediately.

        The worker receives a snapshot of the job and its cancellation token.
        Its return value (if any) is stored in ``job.result``.
        """
        if job_id in self._tasks and not self._tasks[job_id].done():
            raise RuntimeError(f"Job {job_id} is already running")

        task = asyncio.create_task(self._run(job_id, worker, reraise=False))
        self._tasks[job_id] = task

        # Cleanup reference when done
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        logger.info("Job %s scheduled in background", job_id)
        return task

    async def run_inline(self, job_id: str, worker: JobWorker) -> Optional[Dict[str, Any]]:
        """
        Run *worker* in the caller's task with the same bookkeeping as a
        background run, re-raising the worker's exception after the job is
        marked failed or cancelled.
        """
        return await self._run(job_id, worker, reraise=True)

    async def _run(self, job_id: str, worker: JobWorker, reraise: bool) -> Optional[Dict[str, Any]]:
        token = self._tokens.setdefault(job_id, CancellationToken())
        job = await self._transition_to_running(job_id)
        if job is None:
            if reraise:
                raise JobCancelled()
            return None
        try:
            result = await worker(job, token)
        except JobCancelled:
            await self._finish(job_id, JobStatus.CANCELLED)
            if reraise:
                raise
            return None
        except Exception as exc:
            logger.error("Job %s failed: %s", job_id, exc, exc_info=True)
            message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            await self._finish(job_id, JobStatus.FAILED, error=message)
            if reraise:
                raise
            return None

        if token.cancelled:
            await self._finish(job_id, JobStatus.CANCELLED)
            if reraise:
                raise JobCancelled()
            return None
        await self._finish(job_id, JobStatus.COMPLETED, result=result)
        return result

    async def wait(self, job_id: str) -> Optional[Job]:
        """Await the job's task (if any) and return its final state."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_status(job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, job_id: str) -> Optional[Job]:
        job = await self.repository.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_jobs(self) -> List[Job]:
        """All jobs, newest first by start time (creation time when not started)."""
        jobs = await self.repository.list()
        jobs.sort(key=lambda j: j.started_at or j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs]

    def token_for(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    # ------------------------------------------------------------------
    # Cancellation / housekeeping
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> bool:
        """Request cancellation; True only for a pending or running job."""
        async with self._lock:
            job = await self.repository.get(job_id)
            if job is None or job.is_terminal:
                return False
            self._tokens.setdefault(job_id, CancellationToken()).cancel()
            if job.status == JobStatus.PENDING:
                job.status = JobStatus.CANCELLED
                job.completed_at = utcnow()
                await self.repository.put(job)
        logger.info("Job %s cancellation requested", job_id)
        progress_broker.publish(job_id, log_event("Cancellation requested"))
        if job.status == JobStatus.CANCELLED:
            progress_broker.close(job_id)
        return True

    async def cleanup_old(self, keep: Optional[int] = None) -> int:
        """Keep only the newest *keep* terminal jobs; never touches active ones."""
        keep = self.history_limit if keep is None else keep
        async with self._lock:
            finished = [j for j in await self.repository.list() if j.is_terminal]
            finished.sort(key=lambda j: j.completed_at or j.started_at or j.created_at, reverse=True)
            stale = finished[keep:]
            for job in stale:
                await self.repository.delete(job.id)
                self._tokens.pop(job.id, None)
        if stale:
            logger.info("Cleaned up %d old job(s)", len(stale))
        return len(stale)

    async def clear_all(self) -> int:
        """Remove every job record.  Active workers are asked to stop."""
        async with self._lock:
            for token in self._tokens.values():
                token.cancel()
            self._tokens.clear()
            count = await self.repository.clear()
        logger.info("Cleared %d job(s)", count)
        return count

    # ------------------------------------------------------------------
    # Worker-facing updates
    # ------------------------------------------------------------------

    async def _mutate(self, job_id: str, fn: Callable[[Job], None]) -> Optional[Job]:
        async with self._lock:
            job = await self.repository.get(job_id)
            if job is None:
                return None
            fn(job)
            await self.repository.put(job)
            return job

    async def update(self, job_id: str, **fields: Any) -> None:
        def _apply(job: Job) -> None:
            for name, value in fields.items():
                setattr(job, name, value)

        await self._mutate(job_id, _apply)

    async def increment(self, job_id: str, **deltas: int) -> None:
        """Atomically add *deltas* to counters, e.g. ``processed_units=1``."""
        if any(d < 0 for d in deltas.values()):
            raise ValueError("job counters only move forward")

        def _apply(job: Job) -> None:
            for name, delta in deltas.items():
                setattr(job, name, getattr(job, name) + delta)

        job = await self._mutate(job_id, _apply)
        if job is not None and job.kind == JobKind.MATCHING:
            progress_broker.publish(job_id, info_event(
                processed_units=job.processed_units,
                total_units=job.total_units,
                matched_units=job.matched_units,
                skipped_units=job.skipped_units,
                failed_units=job.failed_units,
            ))

    async def log(self, job_id: str, message: str) -> None:
        def _apply(job: Job) -> None:
            job.logs.append(message)
            del job.logs[:-settings.JOB_LOG_LIMIT]

        await self._mutate(job_id, _apply)
        progress_broker.publish(job_id, log_event(message))

    async def step_start(self, job_id: str, name: str, progress_percent: int) -> None:
        await self._mutate(job_id, lambda job: job.steps.append(JobStep(name=name)))
        progress_broker.publish(job_id, step_event(name, "start", progress_percent))

    async def step_ok(self, job_id: str, name: str, progress_percent: int) -> None:
        def _apply(job: Job) -> None:
            for step in reversed(job.steps):
                if step.name == name and step.ended_at is None:
                    step.status = "ok"
                    step.ended_at = utcnow()
                    step.duration_ms = int((step.ended_at - step.started_at).total_seconds() * 1000)
                    break

        await self._mutate(job_id, _apply)
        progress_broker.publish(job_id, step_event(name, "ok", progress_percent))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition_to_running(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = await self.repository.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
            await self.repository.put(job)
            logger.info("Job %s started", job_id)
            return copy.deepcopy(job)

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._lock:
            job = await self.repository.get(job_id)
            if job is None or job.is_terminal:
                return
            job.status = status
            job.completed_at = utcnow()
            if status == JobStatus.FAILED:
                job.error = (error or "Job failed")[:500]
            if result is not None:
                job.result = result
            await self.repository.put(job)
        progress_broker.close(job_id)
        logger.info(
            "Job %s %s (processed=%d matched=%d skipped=%d failed=%d)",
            job_id,
            status.value,
            job.processed_units,
            job.matched_units,
            job.skipped_units,
            job.failed_units,
        )


# Module-level singleton instance
job_manager = JobManager()
