"""Durable delayed-task queue and its delivery worker.

Tasks are rows in ``scheduled_tasks``. The worker polls for due rows and
POSTs each payload as JSON. Only a 2xx response marks a task delivered, so a
crash between the POST and the status update redelivers it: callbacks must
be idempotent.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from pillsync.tasks.models import ScheduledTask, TaskStatus

logger = logging.getLogger(__name__)


class TaskQueue:
    """Enqueues delayed HTTP tasks into one named queue."""

    def __init__(self, engine: Engine, name: str = "default") -> None:
        self.engine = engine
        self.name = name

    def enqueue(
        self,
        url: str,
        payload: dict[str, Any],
        delay: timedelta,
        headers: dict[str, str] | None = None,
    ) -> ScheduledTask:
        task = ScheduledTask(
            queue=self.name,
            url=url,
            payload=payload,
            headers=headers or {},
            schedule_time=datetime.now(UTC) + delay,
        )
        with Session(self.engine) as session:
            session.add(task)
            session.commit()
            session.refresh(task)
        logger.info("Enqueued task %s on %s for %s", task.id, self.name, task.schedule_time)
        return task

    def list_tasks(self, status: TaskStatus | None = None) -> list[ScheduledTask]:
        with Session(self.engine) as session:
            stmt = select(ScheduledTask).where(ScheduledTask.queue == self.name)
            if status is not None:
                stmt = stmt.where(ScheduledTask.status == status)
            stmt = stmt.order_by(col(ScheduledTask.schedule_time))
            return list(session.exec(stmt).all())


class TaskWorker:
    """Polls for due tasks and delivers them over HTTP."""

    def __init__(
        self,
        engine: Engine,
        poll_interval: int = 15,
        max_attempts: int = 5,
        retry_backoff: int = 60,
        timeout: float = 10.0,
    ) -> None:
        self.engine = engine
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.timeout = timeout
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        logger.info("Starting task worker (interval=%ds)", self.poll_interval)
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        logger.info("Stopping task worker")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Task worker error")

            await asyncio.sleep(self.poll_interval)

    def _due_tasks(self, now: datetime, limit: int = 50) -> list[ScheduledTask]:
        with Session(self.engine) as session:
            stmt = (
                select(ScheduledTask)
                .where(
                    ScheduledTask.status == TaskStatus.pending,
                    col(ScheduledTask.schedule_time) <= now,
                )
                .order_by(col(ScheduledTask.schedule_time))
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    async def run_due(self, now: datetime | None = None) -> int:
        """Deliver every due task once. Returns the number delivered."""
        now = now or datetime.now(UTC)
        tasks = self._due_tasks(now)
        if not tasks:
            return 0

        delivered = 0
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for task in tasks:
                error: str | None = None
                try:
                    response = await client.post(task.url, json=task.payload, headers=task.headers)
                    if not response.is_success:
                        error = f"HTTP {response.status_code}"
                except httpx.HTTPError as e:
                    error = str(e) or type(e).__name__

                self._record_attempt(task.id, now, error)
                if error is None:
                    delivered += 1
        return delivered

    def _record_attempt(self, task_id: str, now: datetime, error: str | None) -> None:
        with Session(self.engine) as session:
            task = session.get(ScheduledTask, task_id)
            if task is None:
                return
            task.attempts += 1
            if error is None:
                task.status = TaskStatus.delivered
                task.delivered_at = now
                logger.info("Task %s delivered to %s", task.id, task.url)
            elif task.attempts >= self.max_attempts:
                task.status = TaskStatus.failed
                task.last_error = error
                logger.error("Task %s failed after %d attempts: %s", task.id, task.attempts, error)
            else:
                task.last_error = error
                task.schedule_time = now + timedelta(seconds=self.retry_backoff * task.attempts)
                logger.warning("Task %s attempt %d failed: %s", task.id, task.attempts, error)
            session.add(task)
            session.commit()
