"""
Task schema and per-viewer projection.

A task carries two independent notions of "which column am I in":
  - status          the creator's canonical workflow status
  - personal status each assignee's own progress, stored on the assignment

Status lifecycle:
  Backlog → In progress → Review → Done, with Hidden as the soft-delete marker.

The same row is projected differently per viewer (see TaskView).
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from .errors import ValidationError


TEAM_PREFIX = "team:"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or ISO-8601 string; always return tz-aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: '{value}'")
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so stored timestamps compare correctly as text
    if value is None:
        return None
    return parse_datetime(value).isoformat(timespec="microseconds")


def normalize_identity(value: str) -> str:
    """User identities are e-mail style; compare case-insensitively."""
    return (value or "").strip().lower()


class TaskStatus(Enum):
    """Kanban columns. HIDDEN is the soft-delete marker."""
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    HIDDEN = "hidden"

    @classmethod
    def from_str(cls, value) -> "TaskStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid status: '{value}'. "
                f"Allowed: {', '.join(s.value for s in cls)}"
            )

    @property
    def is_open(self) -> bool:
        return self not in (TaskStatus.DONE, TaskStatus.HIDDEN)


# Display order of columns on the board
COLUMN_ORDER = [
    TaskStatus.BACKLOG,
    TaskStatus.IN_PROGRESS,
    TaskStatus.REVIEW,
    TaskStatus.DONE,
]


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_str(cls, value) -> "TaskPriority":
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.MEDIUM
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid priority: '{value}'. "
                f"Allowed: {', '.join(p.value for p in cls)}"
            )


class TargetKind(Enum):
    USER = "user"
    TEAM = "team"


@dataclass(frozen=True)
class AssignmentTarget:
    """Either a single user identity or a team tag (resolved dynamically)."""
    kind: TargetKind
    ref: str

    @classmethod
    def parse(cls, raw) -> "AssignmentTarget":
        """Parse the wire form: 'team:<tag>' or a user identity."""
        if isinstance(raw, cls):
            return raw
        text = (raw or "").strip() if isinstance(raw, str) else ""
        if text.lower().startswith(TEAM_PREFIX):
            tag = text[len(TEAM_PREFIX):].strip()
            if not tag:
                raise ValidationError(f"Empty team tag in target: '{raw}'")
            return cls(TargetKind.TEAM, tag)
        identity = normalize_identity(text)
        if not identity:
            raise ValidationError(f"Invalid assignment target: {raw!r}")
        return cls(TargetKind.USER, identity)

    @classmethod
    def user(cls, identity: str) -> "AssignmentTarget":
        return cls(TargetKind.USER, normalize_identity(identity))

    @classmethod
    def team(cls, tag: str) -> "AssignmentTarget":
        return cls(TargetKind.TEAM, tag.strip())

    @property
    def is_team(self) -> bool:
        return self.kind == TargetKind.TEAM

    def __str__(self) -> str:
        if self.is_team:
            return f"{TEAM_PREFIX}{self.ref}"
        return self.ref


@dataclass
class Assignment:
    """Link from one target to a task. personal_status is None until the assignee diverges."""
    task_id: str
    target: AssignmentTarget
    personal_status: Optional[TaskStatus] = None
    # Explicit statuses of team members, keyed by user identity
    member_statuses: Dict[str, TaskStatus] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "target": str(self.target),
            "kind": self.target.kind.value,
            "personal_status": self.personal_status.value if self.personal_status else None,
        }
        if self.target.is_team:
            data["member_statuses"] = {u: s.value for u, s in self.member_statuses.items()}
        return data


@dataclass
class Task:
    """A unit of work owned by its creator."""

    task_id: str
    title: str
    created_by: str
    description: str = ""
    due_date: Optional[datetime] = None
    priority: TaskPriority = TaskPriority.MEDIUM

    # Kanban
    status: TaskStatus = TaskStatus.BACKLOG
    position: int = 0

    # Opaque references to other collaborators' entities
    channel_id: Optional[str] = None
    client_id: Optional[str] = None

    # Recurrence
    is_recurring: bool = False
    recurrence_rule: Optional[str] = None

    last_status_change_at: datetime = field(default_factory=utc_now)
    snoozed_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1

    assignments: List[Assignment] = field(default_factory=list)

    @property
    def targets(self) -> List[AssignmentTarget]:
        return [a.target for a in self.assignments]

    def assignment_for(self, target: AssignmentTarget) -> Optional[Assignment]:
        for a in self.assignments:
            if a.target == target:
                return a
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "due_date": to_iso(self.due_date),
            "priority": self.priority.value,
            "status": self.status.value,
            "position": self.position,
            "created_by": self.created_by,
            "channel_id": self.channel_id,
            "client_id": self.client_id,
            "is_recurring": self.is_recurring,
            "recurrence_rule": self.recurrence_rule,
            "last_status_change_at": to_iso(self.last_status_change_at),
            "snoozed_until": to_iso(self.snoozed_until),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version,
            "assigned_to": [str(t) for t in self.targets],
            "assignments": [a.to_dict() for a in self.assignments],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Build from a database row dict (assignments hydrated separately)."""
        return cls(
            task_id=data["task_id"],
            title=data.get("title", ""),
            created_by=data.get("created_by", ""),
            description=data.get("description") or "",
            due_date=parse_datetime(data.get("due_date")),
            priority=TaskPriority.from_str(data.get("priority")),
            status=TaskStatus.from_str(data.get("status", "backlog")),
            position=int(data.get("position") or 0),
            channel_id=data.get("channel_id"),
            client_id=data.get("client_id"),
            is_recurring=bool(data.get("is_recurring", False)),
            recurrence_rule=data.get("recurrence_rule"),
            last_status_change_at=parse_datetime(data.get("last_status_change_at")) or utc_now(),
            snoozed_until=parse_datetime(data.get("snoozed_until")),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_datetime(data.get("updated_at")) or utc_now(),
            version=int(data.get("version") or 1),
        )


class ViewerRole(Enum):
    CREATOR = "creator"
    ASSIGNEE = "assignee"


@dataclass
class TaskView:
    """
    One viewer's projection of a task.

    Creators see the canonical status; assignees see their personal status,
    falling back to the canonical status until they diverge.
    """
    task: Task
    viewer: str
    role: ViewerRole
    display_status: TaskStatus
    my_status: Optional[TaskStatus] = None

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def version(self) -> int:
        return self.task.version

    def to_dict(self) -> Dict[str, Any]:
        data = self.task.to_dict()
        data["viewer"] = self.viewer
        data["role"] = self.role.value
        data["display_status"] = self.display_status.value
        data["my_status"] = self.my_status.value if self.my_status else None
        return data


class NotificationType(Enum):
    DEADLINE_APPROACHING = "deadline_approaching"
    DEADLINE_OVERDUE = "deadline_overdue"
    ASSIGNED = "assigned"
    STALE = "stale"


@dataclass
class Notification:
    """A directed message to one recipient. Only `read` ever changes."""
    notification_id: str
    recipient: str
    type: NotificationType
    title: str
    message: str
    task_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "recipient": self.recipient,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "task_id": self.task_id,
            "metadata": self.metadata,
            "created_at": to_iso(self.created_at),
            "read": self.read,
        }
