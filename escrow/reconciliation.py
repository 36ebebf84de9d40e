"""
Reconciliation Scheduler

Re-pulls provider status for onboarding and payout records that are not yet
terminal so a missed webhook never leaves a record stuck. Each poll goes through
the same transition functions the webhook endpoint uses.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import Settings
from .errors import GatewayUnavailableError, NotFoundError, StalledNeedsOperatorError
from .models import ReconciliationTask, SubjectType, TaskStatus
from .notifications import Notifier
from .store import Clock, InMemoryStorage, utc_now

logger = logging.getLogger(__name__)

# A handler polls one subject and returns True once it reached a terminal state.
Handler = Callable[[str], bool]


class ReconciliationScheduler:
    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Settings,
        notifier: Notifier,
        clock: Clock = utc_now,
    ):
        self.storage = storage
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.handlers: dict[SubjectType, Handler] = {}
        self._guard = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, subject_type: SubjectType, handler: Handler) -> None:
        self.handlers[subject_type] = handler

    def backoff(self, attempt: int) -> timedelta:
        delay = self.settings.reconcile_base_delay * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(delay, self.settings.reconcile_max_delay))

    def track(self, subject_type: SubjectType, subject_id: str) -> ReconciliationTask:
        """Schedule polling for a subject; progress on an existing task resets its attempts."""
        now = self.clock()
        with self._guard:
            task_id = self.storage.task_index.get((subject_type, subject_id))
            if task_id is not None:
                row = self.storage.reconciliation_tasks[task_id]
                row.update(
                    attempt=0, status=TaskStatus.SCHEDULED, last_error=None,
                    next_poll_at=now + self.backoff(1),
                )
                return ReconciliationTask(**row)

            row = {
                "id": uuid4(),
                "subject_type": subject_type,
                "subject_id": subject_id,
                "next_poll_at": now + self.backoff(1),
                "attempt": 0,
                "status": TaskStatus.SCHEDULED,
                "last_error": None,
                "created_at": now,
            }
            self.storage.reconciliation_tasks[row["id"]] = row
            self.storage.task_index[(subject_type, subject_id)] = row["id"]
            logger.info("Tracking %s %s for reconciliation", subject_type.value, subject_id)
            return ReconciliationTask(**row)

    def untrack(self, subject_type: SubjectType, subject_id: str) -> None:
        with self._guard:
            task_id = self.storage.task_index.pop((subject_type, subject_id), None)
            if task_id is not None:
                self.storage.reconciliation_tasks.pop(task_id, None)
                logger.info("Stopped tracking %s %s", subject_type.value, subject_id)

    def get(self, subject_type: SubjectType, subject_id: str) -> Optional[ReconciliationTask]:
        task_id = self.storage.task_index.get((subject_type, subject_id))
        row = self.storage.reconciliation_tasks.get(task_id) if task_id else None
        return ReconciliationTask(**row) if row else None

    def due(self, now: Optional[datetime] = None) -> list[ReconciliationTask]:
        now = now or self.clock()
        with self._guard:
            tasks = [
                ReconciliationTask(**row) for row in self.storage.reconciliation_tasks.values()
                if row["status"] == TaskStatus.SCHEDULED and row["next_poll_at"] <= now
            ]
        tasks.sort(key=lambda t: t.next_poll_at)
        return tasks

    def stalled(self) -> list[ReconciliationTask]:
        return [
            ReconciliationTask(**row) for row in self.storage.reconciliation_tasks.values()
            if row["status"] == TaskStatus.STALLED
        ]

    def requeue(self, task_id: UUID) -> ReconciliationTask:
        with self._guard:
            row = self.storage.reconciliation_tasks.get(task_id)
            if row is None:
                raise NotFoundError(f"Reconciliation task {task_id} not found")
            row.update(attempt=0, status=TaskStatus.SCHEDULED, next_poll_at=self.clock())
            logger.info("Operator requeued %s %s", row["subject_type"].value, row["subject_id"])
            return ReconciliationTask(**row)

    def run_due(self, now: Optional[datetime] = None) -> list[dict]:
        now = now or self.clock()
        results = []
        for task in self.due(now):
            handler = self.handlers.get(task.subject_type)
            outcome = {
                "task_id": str(task.id),
                "subject_type": task.subject_type.value,
                "subject_id": task.subject_id,
            }
            if handler is None:
                logger.error("No reconciliation handler for %s", task.subject_type.value)
                continue

            error = None
            try:
                done = handler(task.subject_id)
            except GatewayUnavailableError as e:
                done, error = False, str(e)
                logger.warning("Reconciliation poll of %s %s failed: %s",
                               task.subject_type.value, task.subject_id, e)
            except Exception as e:
                done, error = False, str(e)
                logger.exception("Reconciliation handler crashed for %s %s",
                                 task.subject_type.value, task.subject_id)

            if done:
                self.untrack(task.subject_type, task.subject_id)
                outcome["outcome"] = "completed"
            else:
                outcome.update(self._reschedule(task.id, now, error))
            results.append(outcome)
        return results

    def run_forever(self, stop: threading.Event, interval: float = 1.0) -> None:
        logger.info("Reconciliation loop started (every %ss)", interval)
        while not stop.is_set():
            try:
                self.run_due()
            except Exception:
                logger.exception("Reconciliation pass failed")
            stop.wait(interval)
        logger.info("Reconciliation loop stopped")

    def start(self, interval: float) -> threading.Thread:
        """Run the polling loop on a daemon thread until ``stop`` is called."""
        if self.running:
            return self._thread
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self.run_forever, args=(self._stop, interval), name="escrow-reconciliation", daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0) -> None:
        thread, self._thread = self._thread, None
        self._stop.set()
        if thread is not None:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _reschedule(self, task_id: UUID, now: datetime, error: Optional[str]) -> dict:
        with self._guard:
            row = self.storage.reconciliation_tasks.get(task_id)
            if row is None:
                return {"outcome": "completed"}
            row["attempt"] += 1
            row["last_error"] = error
            if row["attempt"] >= self.settings.reconcile_max_attempts:
                row["status"] = TaskStatus.STALLED
                stall = StalledNeedsOperatorError(
                    str(task_id), f"{row['subject_type'].value} {row['subject_id']}", row["attempt"]
                )
            else:
                row["next_poll_at"] = now + self.backoff(row["attempt"] + 1)
                return {"outcome": "rescheduled", "attempt": row["attempt"],
                        "next_poll_at": row["next_poll_at"].isoformat(), "error": error}

        logger.error("%s (last error: %s)", stall, error)
        self.notifier.notify("reconciliation.stalled", {
            "task_id": stall.task_id, "subject": stall.subject,
            "attempts": stall.attempts, "code": stall.code, "last_error": error,
        })
        return {"outcome": "stalled", "attempt": stall.attempts, "error": error}
