"""
Periodic jobs over the task store.

DeadlineScheduler  - overdue / due-soon notifications with per-recipient de-duplication
StaleTaskJob       - reminders for tasks whose status has not moved for days
RecurringJob       - rolls recurring tasks into their next occurrence

A job run either completes or fails as a whole when the task list cannot be
read. Failures for a single task or recipient are logged and skipped.
"""
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from .errors import CrewboardError, TransientResolutionFailure
from .notifications import NotificationSink
from .schema import NotificationType, Task, parse_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    """Outcome of one job run."""
    tasks: int = 0
    sent: int = 0
    deduplicated: int = 0
    skipped_recipients: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "tasks": self.tasks,
            "sent": self.sent,
            "deduplicated": self.deduplicated,
            "skipped_recipients": self.skipped_recipients,
            "failed": self.failed,
        }


def hours_remaining(due: datetime, now: datetime) -> int:
    """Whole hours until due, never negative."""
    if due < now:
        return 0
    return max(0, math.floor((due - now) / timedelta(hours=1)))


class _NotifyingJob:
    """Shared recipient selection and de-duplicated emission."""

    def __init__(self, store, sink: NotificationSink, dedup_window: timedelta):
        self.store = store
        self.sink = sink
        self.dedup_window = dedup_window

    def _recipients(self, task: Task, report: ScanReport, include_creator: bool = True) -> List[str]:
        """Creator plus assignees still working on the task, resolved now."""
        memberships: Dict[str, Set[str]] = {}
        recipients = []
        for identity in sorted(self.store.audience(task)):
            if identity == task.created_by:
                if include_creator:
                    recipients.append(identity)
                continue
            view = self.store.project(task, identity, memberships)
            if view is None or not view.display_status.is_open:
                report.skipped_recipients += 1
                continue
            recipients.append(identity)
        return recipients

    def _emit(self, report: ScanReport, recipient: str, task: Task, kind: NotificationType,
              title: str, message: str, metadata: dict, now: datetime):
        try:
            if self.sink.recently_sent(recipient, task.task_id, kind, now - self.dedup_window):
                report.deduplicated += 1
                return
            self.sink.emit(recipient, kind, title, message,
                           task_id=task.task_id, metadata=metadata, created_at=now)
            report.sent += 1
        except CrewboardError as e:
            report.failed += 1
            logger.error(f"Failed to notify {recipient} about {task.task_id}: {e}")


class DeadlineScheduler(_NotifyingJob):
    """Scans open tasks for approaching and overdue due dates."""

    def __init__(
        self,
        store,
        sink: NotificationSink,
        lookahead: timedelta = timedelta(hours=24),
        dedup_window: timedelta = timedelta(hours=4),
    ):
        super().__init__(store, sink, dedup_window)
        self.lookahead = lookahead

    def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        """
        One scan. Reading the task list is fatal to the run; anything that
        goes wrong for one task or recipient is logged and skipped.
        """
        now = parse_datetime(now) if now else utc_now()
        tasks = self.store.due_tasks(now, self.lookahead)
        report = ScanReport(tasks=len(tasks))

        for task in tasks:
            try:
                recipients = self._recipients(task, report)
            except TransientResolutionFailure as e:
                report.failed += 1
                logger.warning(f"Skipping {task.task_id}: could not resolve recipients ({e})")
                continue

            overdue = task.due_date < now
            if overdue:
                kind = NotificationType.DEADLINE_OVERDUE
                title = "Task Overdue!"
                message = f'"{task.title}" is overdue'
            else:
                kind = NotificationType.DEADLINE_APPROACHING
                title = "Deadline Approaching"
                message = f'"{task.title}" is due soon'
            metadata = {
                "task_id": task.task_id,
                "due_date": to_iso(task.due_date),
                "urgency": "overdue" if overdue else "approaching",
                "hours_remaining": hours_remaining(task.due_date, now),
                "priority": task.priority.value,
            }
            for recipient in recipients:
                self._emit(report, recipient, task, kind, title, message, metadata, now)

        logger.info(
            f"Deadline scan: {report.tasks} tasks, {report.sent} sent, "
            f"{report.deduplicated} deduplicated, {report.failed} failed"
        )
        return report

    def run_forever(self, interval: float, stop_event: Optional[threading.Event] = None, jobs=()):
        """Run every `interval` seconds until stop_event is set. A failed run is retried next tick."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            for job in (self,) + tuple(jobs):
                try:
                    job.run_once()
                except Exception as e:
                    logger.error(f"{type(job).__name__} run failed, retrying next tick: {e}")
            stop_event.wait(interval)


class StaleTaskJob(_NotifyingJob):
    """Reminds assignees of tasks whose canonical status has not changed for a while."""

    def __init__(
        self,
        store,
        sink: NotificationSink,
        stale_after: timedelta = timedelta(days=3),
        dedup_window: timedelta = timedelta(hours=4),
    ):
        super().__init__(store, sink, dedup_window)
        self.stale_after = stale_after

    def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        now = parse_datetime(now) if now else utc_now()
        tasks = self.store.stale_tasks(now, self.stale_after)
        report = ScanReport(tasks=len(tasks))

        for task in tasks:
            try:
                recipients = self._recipients(task, report, include_creator=False)
            except TransientResolutionFailure as e:
                report.failed += 1
                logger.warning(f"Skipping stale {task.task_id}: {e}")
                continue
            days = (now - task.last_status_change_at).days
            for recipient in recipients:
                self._emit(
                    report, recipient, task, NotificationType.STALE,
                    "Task Needs Attention",
                    f'"{task.title}" has been {task.status.value.replace("_", " ")} for {days} days',
                    {"task_id": task.task_id, "status": task.status.value, "days": days},
                    now,
                )

        logger.info(f"Stale scan: {report.tasks} tasks, {report.sent} sent")
        return report


class RecurringJob:
    """Advances recurring tasks whose due date has passed."""

    def __init__(self, store):
        self.store = store

    def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        now = parse_datetime(now) if now else utc_now()
        advanced, failures = self.store.advance_recurring(now)
        report = ScanReport(tasks=len(advanced) + failures, sent=len(advanced), failed=failures)
        if advanced or failures:
            logger.info(f"Recurring: {len(advanced)} advanced, {failures} failed")
        return report
