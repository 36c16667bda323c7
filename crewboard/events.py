"""
Change notifier: fans committed task mutations out to live clients.

Each client holds a LocalTaskSet (its cached visible tasks). On every event
the client re-fetches its own projection of the affected task and applies one
of three rules:

  newly visible      → insert
  no longer visible  → remove   (unassigned, or the task became hidden)
  otherwise          → replace  (authoritative position wins over local drags)

Delivery is at-least-once. Duplicate event ids and stale versions are
ignored, and an overflowing client is resynchronised from list_visible(), so
every client converges on the store's current state.
"""
import logging
import queue
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .errors import TransientResolutionFailure
from .schema import TaskStatus, TaskView, normalize_identity, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ChangeEvent:
    """One committed mutation. audience=None means every subscriber."""
    task_id: str
    kind: str                      # created, content, assignments, status, personal_status, deleted, snoozed, recurred
    actor: str
    version: int
    fields: List[str] = field(default_factory=list)
    audience: Optional[Set[str]] = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "task_id": self.task_id,
            "kind": self.kind,
            "actor": self.actor,
            "version": self.version,
            "fields": self.fields,
            "timestamp": to_iso(self.timestamp),
        }


class ReconcileAction(Enum):
    INSERT = "insert"
    REMOVE = "remove"
    REPLACE = "replace"
    IGNORE = "ignore"


@dataclass
class Reconciliation:
    """What a client did with one event."""
    event_id: str
    task_id: str
    action: ReconcileAction
    view: Optional[TaskView] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "task_id": self.task_id,
            "action": self.action.value,
            "task": self.view.to_dict() if self.view else None,
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Client-side visible set
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class LocalTaskSet:
    """A client's cached visible tasks plus its in-flight drag hints."""

    def __init__(self, viewer: str, seen_limit: int = 2048):
        self.viewer = normalize_identity(viewer)
        self.tasks: Dict[str, TaskView] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._seen_limit = seen_limit
        # task_id → (column, index) the user dropped it at, not yet confirmed
        self._hints: Dict[str, Tuple[TaskStatus, int]] = {}

    def _mark_seen(self, event_id: str) -> bool:
        """Record an event id. False if it was already applied."""
        if event_id in self._seen:
            return False
        self._seen[event_id] = None
        while len(self._seen) > self._seen_limit:
            self._seen.popitem(last=False)
        return True

    def move_optimistic(self, task_id: str, status: TaskStatus, index: int):
        """Local drag feedback. Overwritten by the next authoritative update."""
        if task_id in self.tasks:
            self._hints[task_id] = (status, max(0, index))

    def _settle_hint(self, view: TaskView):
        hint = self._hints.pop(view.task_id, None)
        if hint and hint != (view.display_status, view.task.position):
            logger.debug(
                f"Drag hint for {view.task_id} overridden: "
                f"{hint[0].value}@{hint[1]} -> {view.display_status.value}@{view.task.position}"
            )

    def apply(self, event_id: str, task_id: str, view: Optional[TaskView]) -> Reconciliation:
        """Apply the viewer's current projection of task_id (None = not visible)."""
        if not self._mark_seen(event_id):
            return Reconciliation(event_id, task_id, ReconcileAction.IGNORE)

        current = self.tasks.get(task_id)
        if view is None:
            if current is None:
                return Reconciliation(event_id, task_id, ReconcileAction.IGNORE)
            del self.tasks[task_id]
            self._hints.pop(task_id, None)
            return Reconciliation(event_id, task_id, ReconcileAction.REMOVE)

        if current is None:
            self.tasks[task_id] = view
            return Reconciliation(event_id, task_id, ReconcileAction.INSERT, view)

        if view.version < current.version:
            # Older than what we already hold; out-of-order delivery
            return Reconciliation(event_id, task_id, ReconcileAction.IGNORE, current)

        self.tasks[task_id] = view
        self._settle_hint(view)
        return Reconciliation(event_id, task_id, ReconcileAction.REPLACE, view)

    def load(self, views: List[TaskView], event_id: str = "resync") -> List[Reconciliation]:
        """Full reconciliation against an authoritative listing."""
        results = []
        incoming = {v.task_id: v for v in views}
        for task_id in list(self.tasks):
            if task_id not in incoming:
                del self.tasks[task_id]
                self._hints.pop(task_id, None)
                results.append(Reconciliation(event_id, task_id, ReconcileAction.REMOVE))
        for task_id, view in incoming.items():
            current = self.tasks.get(task_id)
            self.tasks[task_id] = view
            if current is None:
                results.append(Reconciliation(event_id, task_id, ReconcileAction.INSERT, view))
            elif current.version != view.version or current.display_status != view.display_status:
                self._settle_hint(view)
                results.append(Reconciliation(event_id, task_id, ReconcileAction.REPLACE, view))
        return results

    def column(self, status: TaskStatus) -> List[TaskView]:
        """Tasks the client shows in a column, local drag hints applied."""
        placed = [
            v for v in self.tasks.values()
            if v.display_status == status and v.task_id not in self._hints
        ]
        placed.sort(key=lambda v: (v.task.position, v.task.created_at))
        hinted = sorted(
            ((idx, self.tasks[tid]) for tid, (col, idx) in self._hints.items() if col == status),
            key=lambda pair: pair[0],
        )
        for idx, view in hinted:
            placed.insert(min(idx, len(placed)), view)
        return placed


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Subscriptions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Subscription:
    """
    One connected client.

    `source` is the task store (anything with view_for() and list_visible()).
    The first poll performs a full load.
    """

    def __init__(self, notifier: "ChangeNotifier", actor: str, source, queue_size: int = 256):
        self.notifier = notifier
        self.actor = normalize_identity(actor)
        self.source = source
        self.local = LocalTaskSet(self.actor)
        self._queue: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=queue_size)
        self.needs_resync = True
        self.closed = False

    def offer(self, event: ChangeEvent):
        """Called by the notifier; never blocks the publishing writer."""
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Subscription for {self.actor} overflowed; scheduling resync")
            self.needs_resync = True
            self._drain()

    def _drain(self):
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def resync(self) -> List[Reconciliation]:
        self._drain()
        self.needs_resync = False
        return self.local.load(self.source.list_visible(self.actor))

    def reconcile(self, event: ChangeEvent) -> Reconciliation:
        view = self.source.view_for(event.task_id, self.actor)
        return self.local.apply(event.event_id, event.task_id, view)

    def poll(self, timeout: Optional[float] = None) -> List[Reconciliation]:
        """Wait up to `timeout` for the next event and reconcile it."""
        if self.closed:
            return []
        try:
            if self.needs_resync:
                return self.resync()
            try:
                event = self._queue.get(timeout=timeout)
            except queue.Empty:
                return []
            return [self.reconcile(event)]
        except TransientResolutionFailure as e:
            logger.warning(f"Reconciliation for {self.actor} deferred: {e}")
            self.needs_resync = True
            return []

    def stream(self, timeout: float = 15.0) -> Iterator[List[Reconciliation]]:
        """Yields reconciliation batches (possibly empty, as keep-alives) until closed."""
        while not self.closed:
            yield self.poll(timeout=timeout)

    def close(self):
        if not self.closed:
            self.closed = True
            self.notifier.unsubscribe(self)
            self._drain()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Notifier
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChangeNotifier:
    """Routes task store commits to subscriptions and in-process listeners."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self.listeners: Dict[str, list] = {}  # event kind ("*" = all) -> callbacks

    def on(self, kind: str, callback: Callable[[ChangeEvent], None]) -> None:
        """Register a callback for an event kind."""
        self.listeners.setdefault(kind, []).append(callback)

    def subscribe(self, actor: str, source) -> Subscription:
        sub = Subscription(self, actor, source, queue_size=self.queue_size)
        with self._lock:
            self._subscriptions.append(sub)
        logger.info(f"Subscribed {sub.actor} ({len(self._subscriptions)} live)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
        logger.info(f"Unsubscribed {sub.actor}")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """Fan an event out. Returns the number of subscriptions it reached."""
        with self._lock:
            targets = [
                s for s in self._subscriptions
                if event.audience is None or s.actor in event.audience
            ]
        for sub in targets:
            sub.offer(event)

        for callback in self.listeners.get(event.kind, []) + self.listeners.get("*", []):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in {event.kind} listener: {e}")
        return len(targets)
