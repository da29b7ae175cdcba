import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from aggregates import PostingAggregateService
from config import get_settings
from database import session_scope


logger = logging.getLogger(__name__)

_user_locks: dict[int, threading.RLock] = {}
_user_locks_guard = threading.Lock()


@contextmanager
def user_lock(user_id: int) -> Iterator[None]:
    """Serialize rebuilds and bookings of one user within this process."""
    with _user_locks_guard:
        lock = _user_locks.setdefault(user_id, threading.RLock())
    with lock:
        yield


class TaskStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    cancelled = "cancelled"
    failed = "failed"


ACTIVE_STATUSES = (TaskStatus.queued, TaskStatus.running)

# Finished tasks stay visible for polling this long.
FINISHED_TASK_TTL = timedelta(hours=1)


@dataclass
class RebuildTask:
    id: str
    user_id: int
    status: TaskStatus = TaskStatus.queued
    processed: int = 0
    total: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)


class TaskManager:
    def __init__(
        self, session_factory=session_scope, finished_ttl: timedelta = FINISHED_TASK_TTL
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.session_factory = session_factory
        self.finished_ttl = finished_ttl
        self._tasks: dict[str, RebuildTask] = {}
        self._guard = threading.Lock()

    def _evict_finished(self, now: datetime) -> None:
        expired = [
            task_id
            for task_id, task in self._tasks.items()
            if task.finished_at is not None
            and now - task.finished_at > self.finished_ttl
        ]
        for task_id in expired:
            del self._tasks[task_id]
        if expired:
            logger.debug(f"rebuild_tasks_evicted: count={len(expired)}")

    def enqueue_rebuild(self, user_id: int) -> RebuildTask:
        with self._guard:
            self._evict_finished(datetime.utcnow())
            for task in self._tasks.values():
                if task.user_id == user_id and task.status in ACTIVE_STATUSES:
                    return task
            task = RebuildTask(id=uuid.uuid4().hex, user_id=user_id)
            self._tasks[task.id] = task
        self.scheduler.add_job(
            self.run_rebuild,
            DateTrigger(),
            args=[task.id],
            id=f"rebuild_{task.id}",
            misfire_grace_time=3600,
        )
        logger.info(f"rebuild_enqueued: task={task.id} user={user_id}")
        return task

    def get(self, task_id: str) -> Optional[RebuildTask]:
        return self._tasks.get(task_id)

    def cancel(self, task_id: str) -> RebuildTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise ValueError("Task not found")
        task.cancel_event.set()
        if task.status == TaskStatus.queued:
            task.status = TaskStatus.cancelled
            task.finished_at = datetime.utcnow()
        logger.info(f"rebuild_cancel_requested: task={task_id} status={task.status.value}")
        return task

    def run_rebuild(self, task_id: str) -> RebuildTask:
        task = self._tasks[task_id]
        if task.status != TaskStatus.queued:
            return task
        task.status = TaskStatus.running

        def on_progress(done: int, total: int) -> None:
            task.processed = done
            task.total = total

        try:
            with user_lock(task.user_id), self.session_factory() as session:
                summary = PostingAggregateService(session).rebuild_for_user(
                    task.user_id, progress=on_progress, cancel=task.cancel_event
                )
        except Exception as exc:
            task.status = TaskStatus.failed
            task.error = str(exc)
            task.finished_at = datetime.utcnow()
            logger.exception(f"rebuild_failed: task={task_id} user={task.user_id}")
            return task

        task.status = TaskStatus.cancelled if summary.cancelled else TaskStatus.completed
        task.finished_at = datetime.utcnow()
        logger.info(
            f"rebuild_done: task={task_id} user={task.user_id} "
            f"status={task.status.value} processed={task.processed}/{task.total}"
        )
        return task

    def start(self) -> None:
        self.scheduler.start()
        logger.info("Task scheduler started")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Task scheduler stopped")
