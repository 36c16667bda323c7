"""
Task storage backend (SQLite).

The store is the single writer of task and assignment state. Every write is
one BEGIN IMMEDIATE transaction: concurrent writers on the same task serialise
(last committer wins) and each caller gets the post-commit task back.

Tables:
  tasks            canonical status + position, UNIQUE(created_by, status, position)
  assignments      one row per (task, target); personal_status for user targets
  member_statuses  explicit statuses of team members, keyed by (task, team, user)
  status_history   every canonical or personal transition
"""
import calendar
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import DEFAULT_DB
from .db import connect, ensure_parent, reading, transaction
from .directory import DirectoryResolver
from .errors import (
    CrewboardError,
    NotFound,
    PermissionDenied,
    TransientResolutionFailure,
    ValidationError,
)
from .events import ChangeEvent
from .positioner import KanbanPositioner
from .schema import (
    COLUMN_ORDER,
    Assignment,
    AssignmentTarget,
    NotificationType,
    Task,
    TaskPriority,
    TaskStatus,
    TaskView,
    ViewerRole,
    normalize_identity,
    parse_datetime,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

# Fields a creator may set on create or edit
EDITABLE_FIELDS = (
    "title",
    "description",
    "due_date",
    "priority",
    "channel_id",
    "client_id",
    "is_recurring",
    "recurrence_rule",
)
# Owned by the status transitions and the positioner
RESERVED_FIELDS = ("status", "position")

RECURRENCE_RULES = ("daily", "weekly", "monthly")

SYSTEM_ACTOR = "system"


def advance_due_date(due: datetime, rule: Optional[str]) -> datetime:
    """Next occurrence of a recurring due date."""
    rule = rule or "daily"
    if rule == "weekly":
        return due + timedelta(days=7)
    if rule == "monthly":
        year = due.year + due.month // 12
        month = due.month % 12 + 1
        day = min(due.day, calendar.monthrange(year, month)[1])
        return due.replace(year=year, month=month, day=day)
    return due + timedelta(days=1)


class TaskStore:
    """SQLite-backed store for tasks and their assignments."""

    def __init__(
        self,
        db_path: str = None,
        directory: DirectoryResolver = None,
        notifier=None,
        sink=None,
        positioner: Optional[KanbanPositioner] = None,
        snooze_days: float = 3.0,
        clock=None,
    ):
        if directory is None:
            raise ValueError("TaskStore needs a directory resolver")
        self.db_path = db_path or DEFAULT_DB
        self.directory = directory
        self.notifier = notifier
        self.sink = sink
        self.positioner = positioner or KanbanPositioner()
        self.snooze_days = snooze_days
        self.clock = clock or utc_now
        ensure_parent(self.db_path)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        conn = connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    due_date TEXT,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    status TEXT NOT NULL DEFAULT 'backlog',
                    position INTEGER NOT NULL,
                    created_by TEXT NOT NULL,
                    channel_id TEXT,
                    client_id TEXT,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    recurrence_rule TEXT,
                    last_status_change_at TEXT NOT NULL,
                    snoozed_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (created_by, status, position)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS assignments (
                    task_id TEXT NOT NULL,
                    target TEXT NOT NULL,      -- user identity or 'team:<tag>'
                    kind TEXT NOT NULL,
                    personal_status TEXT,      -- NULL = follow canonical status
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (task_id, target),
                    FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS member_statuses (
                    task_id TEXT NOT NULL,
                    team TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (task_id, team, user_id),
                    FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS status_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    scope TEXT NOT NULL,       -- canonical | personal
                    from_status TEXT,
                    to_status TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    FOREIGN KEY (task_id) REFERENCES tasks(task_id) ON DELETE CASCADE
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, due_date)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_assignments_target ON assignments(target)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_task ON status_history(task_id, id)")
        finally:
            conn.close()

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Reads
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def get_task(self, task_id: str) -> Task:
        with reading(self.db_path) as conn:
            return self._require_task(conn, task_id)

    def view_for(self, task_id: str, viewer: str) -> Optional[TaskView]:
        """The viewer's projection of one task, or None if it is not visible to them."""
        with reading(self.db_path) as conn:
            task = self._load_task(conn, task_id)
        if task is None:
            return None
        return self.project(task, viewer)

    def list_visible(self, actor: str) -> List[TaskView]:
        """
        Non-hidden tasks the actor created or is assigned to, projected per viewer.

        Team assignments are resolved now. A team that cannot be resolved only
        affects the tasks that depend on it: the creator still sees their task,
        and a task reachable only through that team is left out and logged.
        """
        actor = normalize_identity(actor)
        with reading(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT t.* FROM tasks t
                LEFT JOIN assignments a ON a.task_id = t.task_id
                WHERE t.status != ?
                  AND (t.created_by = ? OR a.target = ? OR a.kind = 'team')
                """,
                (TaskStatus.HIDDEN.value, actor, actor),
            ).fetchall()
            tasks = [self._hydrate(conn, self._row_to_task(r)) for r in rows]

        memberships: Dict[str, Set[str]] = {}
        views = []
        for task in tasks:
            try:
                view = self.project(task, actor, memberships)
            except TransientResolutionFailure as e:
                if task.created_by == actor:
                    view = TaskView(task, actor, ViewerRole.CREATOR, task.status)
                else:
                    logger.warning(f"Leaving {task.task_id} out of {actor}'s list: {e}")
                    view = None
            if view is not None:
                views.append(view)
        views.sort(key=lambda v: (
            COLUMN_ORDER.index(v.display_status),
            v.task.position,
            v.task.created_at,
        ))
        return views

    def project(
        self,
        task: Task,
        viewer: str,
        memberships: Optional[Dict[str, Set[str]]] = None,
    ) -> Optional[TaskView]:
        """
        Build one viewer's projection.

        Creator → canonical status. Assignee → personal status, falling back
        to canonical. None when the viewer has no relation to the task, the
        task is hidden, or the assignee has hidden it for themselves.
        """
        viewer = normalize_identity(viewer)
        if task.status == TaskStatus.HIDDEN:
            return None
        personal, assigned = self._personal_status(task, viewer, memberships)
        my_status = (personal or task.status) if assigned else None

        if task.created_by == viewer:
            return TaskView(task, viewer, ViewerRole.CREATOR, task.status, my_status)
        if not assigned or my_status == TaskStatus.HIDDEN:
            return None
        return TaskView(task, viewer, ViewerRole.ASSIGNEE, my_status, my_status)

    def audience(self, task: Task) -> Set[str]:
        """Creator plus currently resolved assignees."""
        return {task.created_by} | self.directory.resolve_all(task.targets)

    def column(self, owner: str, status) -> List[Task]:
        """One creator's column in position order."""
        status = TaskStatus.from_str(status)
        with reading(self.db_path) as conn:
            ids = self.positioner.column(conn, normalize_identity(owner), status)
            return [self._require_task(conn, task_id) for task_id in ids]

    def history(self, task_id: str) -> List[Dict[str, Any]]:
        with reading(self.db_path) as conn:
            self._require_task(conn, task_id)
            rows = conn.execute(
                "SELECT * FROM status_history WHERE task_id = ? ORDER BY id ASC",
                (task_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def due_tasks(self, now: datetime, lookahead: timedelta) -> List[Task]:
        """Open tasks due before now + lookahead (overdue ones included)."""
        horizon = to_iso(parse_datetime(now) + lookahead)
        with reading(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE status NOT IN (?, ?)
                  AND due_date IS NOT NULL AND due_date <= ?
                ORDER BY due_date ASC
                """,
                (TaskStatus.DONE.value, TaskStatus.HIDDEN.value, horizon),
            ).fetchall()
            return [self._hydrate(conn, self._row_to_task(r)) for r in rows]

    def stale_tasks(self, now: datetime, stale_after: timedelta) -> List[Task]:
        """Open tasks whose canonical status has not moved for stale_after and are not snoozed."""
        now = parse_datetime(now)
        with reading(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE status NOT IN (?, ?)
                  AND last_status_change_at <= ?
                  AND (snoozed_until IS NULL OR snoozed_until <= ?)
                ORDER BY last_status_change_at ASC
                """,
                (
                    TaskStatus.DONE.value,
                    TaskStatus.HIDDEN.value,
                    to_iso(now - stale_after),
                    to_iso(now),
                ),
            ).fetchall()
            return [self._hydrate(conn, self._row_to_task(r)) for r in rows]

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Creator writes
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def create_task(self, creator: str, fields: Dict[str, Any], targets: Iterable = ()) -> Task:
        """
        Create a task in the creator's backlog, at the end of the column.

        Targets are validated against the directory before anything is
        written, so an unknown user or an unreachable directory leaves no
        partial task behind.
        """
        creator = normalize_identity(creator)
        if not creator:
            raise ValidationError("Creator identity is required")
        clean = self._clean_fields(fields or {})
        if "title" not in clean:
            raise ValidationError("Title is required")
        parsed = self._parse_targets(targets)
        self.directory.validate_targets(parsed)

        now = self.clock()
        task_id = uuid.uuid4().hex
        row = {
            "description": "",
            "priority": TaskPriority.MEDIUM.value,
            "is_recurring": 0,
        }
        row.update(clean)

        with transaction(self.db_path) as conn:
            position = self.positioner.append_position(conn, creator, TaskStatus.BACKLOG)
            row.update({
                "task_id": task_id,
                "status": TaskStatus.BACKLOG.value,
                "position": position,
                "created_by": creator,
                "last_status_change_at": to_iso(now),
                "created_at": to_iso(now),
                "updated_at": to_iso(now),
                "version": 1,
            })
            columns = ", ".join(row)
            placeholders = ", ".join("?" for _ in row)
            conn.execute(f"INSERT INTO tasks ({columns}) VALUES ({placeholders})", list(row.values()))
            for target in parsed:
                self._insert_assignment(conn, task_id, target, now)
            task = self._require_task(conn, task_id)

        logger.info(f"Created task {task_id} '{task.title}' by {creator} ({len(parsed)} targets)")
        self._publish(task, "created", creator, fields=list(row), audience=self._safe_audience(task))
        self._notify_assigned(task, parsed)
        return task

    def update_task_content(self, actor: str, task_id: str, fields: Dict[str, Any]) -> Task:
        """Creator-only edit of title, description, due date, priority and references."""
        actor = normalize_identity(actor)
        now = self.clock()
        with transaction(self.db_path) as conn:
            task = self._require_task(conn, task_id)
            self._require_creator(task, actor, "edit")
            clean = self._clean_fields(fields or {})
            if clean:
                assignments = ", ".join(f"{col} = ?" for col in clean)
                conn.execute(
                    f"UPDATE tasks SET {assignments}, updated_at = ?, version = version + 1 WHERE task_id = ?",
                    list(clean.values()) + [to_iso(now), task_id],
                )
            task = self._require_task(conn, task_id)

        if clean:
            logger.info(f"Updated {task_id}: {', '.join(clean)}")
            self._publish(task, "content", actor, fields=list(clean), audience=self._safe_audience(task))
        return task

    def update_assignments(self, actor: str, task_id: str, add: Iterable = (), remove: Iterable = ()) -> Task:
        """
        Creator-only reassignment.

        Removing a target drops its assignment row along with any personal or
        team-member statuses. Added targets are validated like on creation.
        """
        actor = normalize_identity(actor)
        add_targets = self._parse_targets(add)
        remove_targets = self._parse_targets(remove)
        overlap = set(add_targets) & set(remove_targets)
        if overlap:
            raise ValidationError(
                f"Targets both added and removed: {', '.join(sorted(str(t) for t in overlap))}"
            )

        before = self.get_task(task_id)
        self._require_creator(before, actor, "reassign")
        self.directory.validate_targets(add_targets)
        before_audience = self._safe_audience(before)

        now = self.clock()
        added: List[AssignmentTarget] = []
        removed: List[AssignmentTarget] = []
        with transaction(self.db_path) as conn:
            task = self._require_task(conn, task_id)
            current = set(task.targets)
            for target in remove_targets:
                if target not in current:
                    continue
                conn.execute(
                    "DELETE FROM assignments WHERE task_id = ? AND target = ?",
                    (task_id, str(target)),
                )
                if target.is_team:
                    conn.execute(
                        "DELETE FROM member_statuses WHERE task_id = ? AND team = ?",
                        (task_id, target.ref),
                    )
                removed.append(target)
            for target in add_targets:
                if target in current:
                    continue
                self._insert_assignment(conn, task_id, target, now)
                added.append(target)
            if added or removed:
                conn.execute(
                    "UPDATE tasks SET updated_at = ?, version = version + 1 WHERE task_id = ?",
                    (to_iso(now), task_id),
                )
            task = self._require_task(conn, task_id)

        if added or removed:
            logger.info(
                f"Reassigned {task_id}: +[{', '.join(map(str, added))}] "
                f"-[{', '.join(map(str, removed))}]"
            )
            after_audience = self._safe_audience(task)
            audience = None
            if before_audience is not None and after_audience is not None:
                audience = before_audience | after_audience
            self._publish(task, "assignments", actor, fields=["assignments"], audience=audience)
            self._notify_assigned(task, added)
        return task

    def transition_canonical_status(
        self,
        actor: str,
        task_id: str,
        new_status,
        target_position: Optional[int] = None,
    ) -> Task:
        """
        Creator-only move of the canonical status and/or position.

        The positioner runs on this transaction's connection, so the status
        and the renumbered columns commit or roll back together.
        """
        actor = normalize_identity(actor)
        now = self.clock()
        with transaction(self.db_path) as conn:
            task = self._require_task(conn, task_id)
            self._require_creator(task, actor, "change the status of")
            status = TaskStatus.from_str(new_status)
            if task.status == TaskStatus.HIDDEN:
                raise ValidationError(f"Task {task_id} is deleted")
            if status == TaskStatus.HIDDEN:
                raise ValidationError("Use delete to hide a task")
            if status == task.status and target_position is None:
                return task

            self.positioner.reposition(conn, task_id, status, target_position)
            if status != task.status:
                conn.execute(
                    """
                    UPDATE tasks SET last_status_change_at = ?, updated_at = ?, version = version + 1
                    WHERE task_id = ?
                    """,
                    (to_iso(now), to_iso(now), task_id),
                )
                self._record_transition(conn, task_id, actor, "canonical", task.status, status, now)
            else:
                conn.execute(
                    "UPDATE tasks SET updated_at = ?, version = version + 1 WHERE task_id = ?",
                    (to_iso(now), task_id),
                )
            previous = task.status
            task = self._require_task(conn, task_id)

        logger.info(f"{task_id}: {previous.value} -> {task.status.value} @ {task.position} by {actor}")
        self._publish(task, "status", actor, fields=["status", "position"], audience=self._safe_audience(task))
        return task

    def soft_delete(self, actor: str, task_id: str) -> Task:
        """Creator-only. Moves the task into the hidden column; repeat calls are no-ops."""
        actor = normalize_identity(actor)
        now = self.clock()
        with transaction(self.db_path) as conn:
            task = self._require_task(conn, task_id)
            self._require_creator(task, actor, "delete")
            if task.status == TaskStatus.HIDDEN:
                return task
            self.positioner.reposition(conn, task_id, TaskStatus.HIDDEN)
            conn.execute(
                """
                UPDATE tasks SET last_status_change_at = ?, updated_at = ?, version = version + 1
                WHERE task_id = ?
                """,
                (to_iso(now), to_iso(now), task_id),
            )
            self._record_transition(conn, task_id, actor, "canonical", task.status, TaskStatus.HIDDEN, now)
            task = self._require_task(conn, task_id)

        logger.info(f"Soft-deleted {task_id} by {actor}")
        self._publish(task, "deleted", actor, fields=["status", "position"], audience=self._safe_audience(task))
        return task

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Assignee writes
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def transition_personal_status(self, actor: str, task_id: str, new_status) -> Task:
        """
        Set the actor's own status on a task they are assigned to.

        Direct user assignments store it on the assignment row; team members
        get one member-status row per team they currently belong to. The
        canonical status and position are never touched.
        """
        actor = normalize_identity(actor)
        task = self.get_task(task_id)
        direct, teams = self._assignment_paths(task, actor)
        if not direct and not teams:
            raise PermissionDenied(f"{actor} is not assigned to task {task_id}")
        status = TaskStatus.from_str(new_status)

        now = self.clock()
        with transaction(self.db_path) as conn:
            current = self._require_task(conn, task_id)
            previous, _ = self._personal_status(current, actor, {t: {actor} for t in teams})
            previous = previous or current.status
            if direct:
                cur = conn.execute(
                    """
                    UPDATE assignments SET personal_status = ?, updated_at = ?
                    WHERE task_id = ? AND target = ?
                    """,
                    (status.value, to_iso(now), task_id, actor),
                )
                written = cur.rowcount
            else:
                written = 0
                for team in teams:
                    if current.assignment_for(AssignmentTarget.team(team)) is None:
                        continue
                    conn.execute(
                        """
                        INSERT INTO member_statuses (task_id, team, user_id, status, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(task_id, team, user_id)
                        DO UPDATE SET status = excluded.status, updated_at = excluded.updated_at
                        """,
                        (task_id, team, actor, status.value, to_iso(now)),
                    )
                    written += 1
            if not written:
                # Unassigned between the permission check and this write
                raise PermissionDenied(f"{actor} is not assigned to task {task_id}")
            conn.execute("UPDATE tasks SET version = version + 1 WHERE task_id = ?", (task_id,))
            self._record_transition(conn, task_id, actor, "personal", previous, status, now)
            task = self._require_task(conn, task_id)

        logger.info(f"{task_id}: {actor} personal {previous.value} -> {status.value}")
        self._publish(task, "personal_status", actor, fields=["personal_status"],
                      audience={actor, task.created_by})
        return task

    def snooze(self, actor: str, task_id: str, days: Optional[float] = None) -> Task:
        """Assignee-only. Suppresses stale reminders until the snooze expires."""
        actor = normalize_identity(actor)
        task = self.get_task(task_id)
        direct, teams = self._assignment_paths(task, actor)
        if not direct and not teams:
            raise PermissionDenied(f"Only assignees can snooze task {task_id}")
        try:
            days = float(self.snooze_days if days is None else days)
        except (TypeError, ValueError):
            raise ValidationError(f"Snooze days must be a number, got: {days!r}")
        if days <= 0:
            raise ValidationError(f"Snooze days must be positive, got: {days}")

        now = self.clock()
        with transaction(self.db_path) as conn:
            self._require_task(conn, task_id)
            conn.execute(
                "UPDATE tasks SET snoozed_until = ?, updated_at = ?, version = version + 1 WHERE task_id = ?",
                (to_iso(now + timedelta(days=days)), to_iso(now), task_id),
            )
            task = self._require_task(conn, task_id)

        logger.info(f"{task_id} snoozed by {actor} until {to_iso(task.snoozed_until)}")
        self._publish(task, "snoozed", actor, fields=["snoozed_until"], audience=self._safe_audience(task))
        return task

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Recurrence
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def advance_recurring(self, now: Optional[datetime] = None) -> Tuple[List[Task], int]:
        """
        Roll recurring tasks whose due date has passed into their next occurrence.

        The due date moves forward by the rule until it is in the future, the
        canonical status goes back to backlog and personal statuses reset.
        Returns (advanced tasks, number of failures).
        """
        now = parse_datetime(now) if now else self.clock()
        with reading(self.db_path) as conn:
            ids = [
                r[0] for r in conn.execute(
                    """
                    SELECT task_id FROM tasks
                    WHERE is_recurring = 1 AND status != ?
                      AND due_date IS NOT NULL AND due_date < ?
                    ORDER BY due_date ASC
                    """,
                    (TaskStatus.HIDDEN.value, to_iso(now)),
                ).fetchall()
            ]

        advanced, failures = [], 0
        for task_id in ids:
            try:
                advanced.append(self._advance_one(task_id, now))
            except (CrewboardError, sqlite3.Error) as e:
                failures += 1
                logger.error(f"Failed to advance recurring task {task_id}: {e}")
        return advanced, failures

    def _advance_one(self, task_id: str, now: datetime) -> Task:
        with transaction(self.db_path) as conn:
            task = self._require_task(conn, task_id)
            due = task.due_date
            while due < now:
                due = advance_due_date(due, task.recurrence_rule)

            if task.status != TaskStatus.BACKLOG:
                self.positioner.reposition(conn, task_id, TaskStatus.BACKLOG)
                self._record_transition(conn, task_id, SYSTEM_ACTOR, "canonical",
                                        task.status, TaskStatus.BACKLOG, now)
            conn.execute(
                """
                UPDATE tasks SET due_date = ?, last_status_change_at = ?, snoozed_until = NULL,
                                 updated_at = ?, version = version + 1
                WHERE task_id = ?
                """,
                (to_iso(due), to_iso(now), to_iso(now), task_id),
            )
            conn.execute(
                "UPDATE assignments SET personal_status = NULL, updated_at = ? WHERE task_id = ?",
                (to_iso(now), task_id),
            )
            conn.execute("DELETE FROM member_statuses WHERE task_id = ?", (task_id,))
            previous_due = task.due_date
            task = self._require_task(conn, task_id)

        logger.info(f"Recurring {task_id}: due {to_iso(previous_due)} -> {to_iso(task.due_date)}")
        self._publish(task, "recurred", SYSTEM_ACTOR, fields=["due_date", "status", "position"],
                      audience=self._safe_audience(task))
        return task

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Helpers
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def _clean_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Validate editable fields and convert them to column values."""
        reserved = [f for f in RESERVED_FIELDS if f in fields]
        if reserved:
            raise ValidationError(
                f"{', '.join(reserved)} can only change through a status transition"
            )
        unknown = [f for f in fields if f not in EDITABLE_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        clean: Dict[str, Any] = {}
        for name, value in fields.items():
            if name == "title":
                if not isinstance(value, str) or not value.strip():
                    raise ValidationError("Title must be a non-empty string")
                clean[name] = value.strip()
            elif name == "description":
                clean[name] = "" if value is None else str(value)
            elif name == "due_date":
                clean[name] = to_iso(parse_datetime(value))
            elif name == "priority":
                clean[name] = TaskPriority.from_str(value).value
            elif name == "is_recurring":
                if not isinstance(value, bool):
                    raise ValidationError(f"is_recurring must be a boolean, got: {value!r}")
                clean[name] = int(value)
            elif name == "recurrence_rule":
                if value is not None and value not in RECURRENCE_RULES:
                    raise ValidationError(
                        f"Invalid recurrence rule: '{value}'. Allowed: {', '.join(RECURRENCE_RULES)}"
                    )
                clean[name] = value
            else:
                clean[name] = None if value is None else str(value)
        return clean

    @staticmethod
    def _parse_targets(targets: Iterable) -> List[AssignmentTarget]:
        """Parse wire targets, dropping duplicates but keeping order."""
        if isinstance(targets, (str, AssignmentTarget)):
            targets = [targets]
        parsed: List[AssignmentTarget] = []
        for raw in targets or ():
            target = AssignmentTarget.parse(raw)
            if target not in parsed:
                parsed.append(target)
        return parsed

    @staticmethod
    def _require_creator(task: Task, actor: str, action: str):
        if task.created_by != actor:
            raise PermissionDenied(f"Only the creator can {action} task {task.task_id}")

    def _members(self, target: AssignmentTarget, memberships: Optional[Dict[str, Set[str]]]) -> Set[str]:
        if memberships is None:
            return self.directory.resolve(target)
        if target.ref not in memberships:
            memberships[target.ref] = self.directory.resolve(target)
        return memberships[target.ref]

    def _personal_status(
        self,
        task: Task,
        viewer: str,
        memberships: Optional[Dict[str, Set[str]]] = None,
    ) -> Tuple[Optional[TaskStatus], bool]:
        """(explicit personal status or None, whether the viewer is assigned)."""
        direct = task.assignment_for(AssignmentTarget.user(viewer))
        if direct is not None:
            return direct.personal_status, True
        assigned = False
        for assignment in task.assignments:
            if not assignment.target.is_team:
                continue
            if viewer in self._members(assignment.target, memberships):
                assigned = True
                if viewer in assignment.member_statuses:
                    return assignment.member_statuses[viewer], True
        return None, assigned

    def _assignment_paths(self, task: Task, actor: str) -> Tuple[bool, List[str]]:
        """Whether the actor is directly assigned, and via which teams."""
        if task.assignment_for(AssignmentTarget.user(actor)) is not None:
            return True, []
        teams = [
            a.target.ref for a in task.assignments
            if a.target.is_team and actor in self.directory.resolve(a.target)
        ]
        return False, teams

    def _insert_assignment(self, conn: sqlite3.Connection, task_id: str, target: AssignmentTarget, now: datetime):
        conn.execute(
            """
            INSERT INTO assignments (task_id, target, kind, personal_status, created_at, updated_at)
            VALUES (?, ?, ?, NULL, ?, ?)
            """,
            (task_id, str(target), target.kind.value, to_iso(now), to_iso(now)),
        )

    def _record_transition(self, conn, task_id, actor, scope, from_status, to_status, now):
        conn.execute(
            """
            INSERT INTO status_history (task_id, actor, scope, from_status, to_status, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                actor,
                scope,
                from_status.value if from_status else None,
                to_status.value,
                to_iso(now),
            ),
        )

    def _safe_audience(self, task: Task) -> Optional[Set[str]]:
        """Event audience; None (broadcast) if teams cannot be resolved right now."""
        try:
            return self.audience(task)
        except TransientResolutionFailure as e:
            logger.warning(f"Broadcasting change of {task.task_id}: audience unresolved ({e})")
            return None

    def _publish(self, task: Task, kind: str, actor: str, fields: List[str], audience: Optional[Set[str]]):
        if self.notifier is None:
            return
        self.notifier.publish(ChangeEvent(
            task_id=task.task_id,
            kind=kind,
            actor=actor,
            version=task.version,
            fields=fields,
            audience=audience,
        ))

    def _notify_assigned(self, task: Task, targets: List[AssignmentTarget]):
        """Tell newly assigned users. Never fails the write that triggered it."""
        if self.sink is None or not targets:
            return
        try:
            recipients = self.directory.resolve_all(targets) - {task.created_by}
        except TransientResolutionFailure as e:
            logger.warning(f"Skipping assignment notifications for {task.task_id}: {e}")
            return
        for recipient in sorted(recipients):
            try:
                self.sink.emit(
                    recipient,
                    NotificationType.ASSIGNED,
                    "New Task Assigned",
                    f"You were assigned to: {task.title}",
                    task_id=task.task_id,
                    metadata={
                        "assigned_by": task.created_by,
                        "priority": task.priority.value,
                        "due_date": to_iso(task.due_date),
                    },
                )
            except CrewboardError as e:
                logger.error(f"Assignment notification to {recipient} failed: {e}")

    def _load_task(self, conn: sqlite3.Connection, task_id: str) -> Optional[Task]:
        row = conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._hydrate(conn, self._row_to_task(row))

    def _require_task(self, conn: sqlite3.Connection, task_id: str) -> Task:
        task = self._load_task(conn, task_id)
        if task is None:
            raise NotFound(f"Task not found: {task_id}")
        return task

    def _hydrate(self, conn: sqlite3.Connection, task: Task) -> Task:
        """Attach assignments and team-member statuses."""
        member_rows = conn.execute(
            "SELECT team, user_id, status FROM member_statuses WHERE task_id = ?",
            (task.task_id,),
        ).fetchall()
        by_team: Dict[str, Dict[str, TaskStatus]] = {}
        for r in member_rows:
            by_team.setdefault(r["team"], {})[r["user_id"]] = TaskStatus(r["status"])

        rows = conn.execute(
            "SELECT target, personal_status FROM assignments WHERE task_id = ? ORDER BY created_at, target",
            (task.task_id,),
        ).fetchall()
        task.assignments = []
        for r in rows:
            target = AssignmentTarget.parse(r["target"])
            task.assignments.append(Assignment(
                task_id=task.task_id,
                target=target,
                personal_status=TaskStatus(r["personal_status"]) if r["personal_status"] else None,
                member_statuses=by_team.get(target.ref, {}) if target.is_team else {},
            ))
        return task

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task.from_dict(dict(row))
