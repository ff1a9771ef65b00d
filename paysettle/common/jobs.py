"""Durable job queue backed by the `jobs` table.

Claiming follows the outbox pattern: due rows are locked with
`FOR UPDATE SKIP LOCKED` and flipped to `active` in one transaction, so two
workers never claim the same row. Rows left `active` longer than the
visibility timeout (a worker died mid-job) become claimable again, which makes
delivery at-least-once. Handlers must therefore be idempotent.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import func, or_, select, update

from paysettle.common.db import as_utc, utcnow
from paysettle.common.logging import job_id_ctx, logger, trace_id_ctx
from paysettle.common.metrics import job_queue_delay_seconds, jobs_processed_total, queue_depth
from paysettle.common.models import Job


TOPICS = ("payment", "refund", "webhook")


@dataclass(frozen=True)
class Task:
    """One claimed job handed to a handler."""

    id: str
    topic: str
    payload: dict[str, Any]
    deliveries: int
    trace_id: str | None = None


@dataclass(frozen=True)
class QueueCounts:
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


Handler = Callable[[Task], Awaitable[None]]


class JobQueue:
    """Topic-keyed queue with delayed visibility and per-topic counters."""

    def __init__(
        self,
        session_factory,
        poll_interval_seconds: float = 0.5,
        visibility_timeout_seconds: int = 300,
        max_deliveries: int = 3,
        redelivery_delay_seconds: int = 5,
        clock=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.poll_interval_seconds = poll_interval_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.max_deliveries = max_deliveries
        self.redelivery_delay_seconds = redelivery_delay_seconds
        self.clock = clock

    def enqueue(self, topic: str, payload: dict[str, Any], delay: float = 0, db=None) -> str:
        """Persist a job that becomes visible no earlier than `now + delay` seconds.

        With `db` the job joins the caller's transaction and is persisted by the
        caller's commit, together with the state change it refers to. The current
        trace id travels with the job so the handler logs under the same id.
        """

        job = Job(
            id=str(uuid4()),
            topic=topic,
            payload=payload,
            status="waiting",
            deliveries=0,
            available_at=self.clock() + timedelta(seconds=delay),
            trace_id=trace_id_ctx.get() or None,
        )
        if db is not None:
            db.add(job)
        else:
            with self.session_factory() as session:
                session.add(job)
                session.commit()
        logger.info("job_enqueued topic=%s job_id=%s delay_s=%s", topic, job.id, delay)
        return job.id

    def claim(self, topic: str, limit: int = 1) -> list[Task]:
        """Atomically claim due waiting rows and stale active rows for `topic`."""

        now = self.clock()
        stale_before = now - timedelta(seconds=self.visibility_timeout_seconds)
        with self.session_factory() as db:
            ids = (
                db.execute(
                    select(Job.id)
                    .where(
                        Job.topic == topic,
                        or_(
                            (Job.status == "waiting") & (Job.available_at <= now),
                            (Job.status == "active") & (Job.claimed_at < stale_before),
                        ),
                    )
                    .order_by(Job.available_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            if not ids:
                return []
            db.execute(
                update(Job)
                .where(Job.id.in_(ids))
                .values(status="active", claimed_at=now, deliveries=Job.deliveries + 1)
                .execution_options(synchronize_session=False)
            )
            jobs = db.execute(select(Job).where(Job.id.in_(ids)).order_by(Job.available_at)).scalars().all()
            tasks = []
            for job in jobs:
                waited = max(0.0, (now - as_utc(job.available_at)).total_seconds())
                job_queue_delay_seconds.labels(service="queue", topic=topic).observe(waited)
                tasks.append(
                    Task(
                        id=job.id,
                        topic=job.topic,
                        payload=dict(job.payload),
                        deliveries=job.deliveries,
                        trace_id=job.trace_id,
                    )
                )
            db.commit()
        return tasks

    async def consume(self, topic: str) -> Task:
        """Suspend until one task of `topic` can be claimed, then return it."""

        while True:
            tasks = self.claim(topic, limit=1)
            if tasks:
                return tasks[0]
            await asyncio.sleep(self.poll_interval_seconds)

    def complete(self, job_id: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == "active")
                .values(status="completed", finished_at=self.clock())
            )
            db.commit()

    def fail(self, job_id: str, error: str) -> str | None:
        """Apply the generic redelivery policy; returns the job's new status."""

        with self.session_factory() as db:
            job = db.get(Job, job_id)
            if job is None:
                return None
            now = self.clock()
            job.last_error = error[:1000]
            if job.deliveries >= self.max_deliveries:
                job.status = "failed"
                job.finished_at = now
            else:
                job.status = "waiting"
                job.claimed_at = None
                job.available_at = now + timedelta(seconds=self.redelivery_delay_seconds)
            db.commit()
            return job.status

    def counts(self, topic: str) -> QueueCounts:
        """Return current depth per state for `topic` and refresh the gauge."""

        now = self.clock()
        with self.session_factory() as db:
            by_status = dict(
                db.execute(
                    select(Job.status, func.count()).where(Job.topic == topic).group_by(Job.status)
                ).all()
            )
            delayed = db.execute(
                select(func.count()).where(
                    Job.topic == topic,
                    Job.status == "waiting",
                    Job.available_at > now,
                )
            ).scalar_one()
        counts = QueueCounts(
            waiting=by_status.get("waiting", 0) - delayed,
            delayed=delayed,
            active=by_status.get("active", 0),
            completed=by_status.get("completed", 0),
            failed=by_status.get("failed", 0),
        )
        for state, value in counts.as_dict().items():
            queue_depth.labels(topic=topic, state=state).set(float(value))
        return counts

    def counts_by_topic(self) -> dict[str, QueueCounts]:
        return {topic: self.counts(topic) for topic in TOPICS}


async def process_task(queue: JobQueue, task: Task, handler: Handler, service_name: str) -> bool:
    """Run one task through `handler`, then ack it or hand it to the redelivery policy."""

    token = job_id_ctx.set(task.id)
    trace_token = trace_id_ctx.set(task.trace_id or task.id)
    try:
        logger.info("job_received topic=%s job_id=%s delivery=%s", task.topic, task.id, task.deliveries)
        try:
            await handler(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("handler_error topic=%s job_id=%s error=%s", task.topic, task.id, exc)
            status = queue.fail(task.id, repr(exc))
            jobs_processed_total.labels(service=service_name, topic=task.topic, result=status or "lost").inc()
            return False
        queue.complete(task.id)
        jobs_processed_total.labels(service=service_name, topic=task.topic, result="completed").inc()
        return True
    finally:
        trace_id_ctx.reset(trace_token)
        job_id_ctx.reset(token)


async def drain(queue: JobQueue, topic: str, handler: Handler, service_name: str = "worker") -> int:
    """Process every currently due task of `topic`; returns how many were handled."""

    handled = 0
    while True:
        tasks = queue.claim(topic, limit=1)
        if not tasks:
            return handled
        await process_task(queue, tasks[0], handler, service_name)
        handled += 1


async def run_worker(
    queue: JobQueue,
    topic: str,
    handler: Handler,
    service_name: str = "worker",
    error_backoff_seconds: float = 2.0,
) -> None:
    """Consume `topic` forever, one task at a time.

    Failures anywhere in the claim, handle or ack path are logged and the loop
    keeps going; an un-acked task is redelivered once its visibility expires.
    """

    while True:
        try:
            task = await queue.consume(topic)
            await process_task(queue, task, handler, service_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s error=%s", topic, exc)
            await asyncio.sleep(error_backoff_seconds)
