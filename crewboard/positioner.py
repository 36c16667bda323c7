"""
Kanban column ordering.

Positions are dense and zero-based per (owner, status) column. The positioner
only ever runs inside a task store transaction, using the store's connection,
so a position change commits or rolls back together with the status change.

Rows that change position are first parked at negative values and then
written to their final index, so UNIQUE(created_by, status, position) holds
after every statement.
"""
import sqlite3
from typing import Dict, List, Optional

from .errors import NotFound, ValidationError
from .schema import TaskStatus

# Moving task is parked here while the origin column is compacted
PARKED = -1


class KanbanPositioner:
    """Computes and persists task positions within status columns."""

    def column(self, conn: sqlite3.Connection, owner: str, status: TaskStatus) -> List[str]:
        """Task ids of one column in display order. Ties resolve by creation time."""
        rows = conn.execute(
            """
            SELECT task_id FROM tasks
            WHERE created_by = ? AND status = ?
            ORDER BY position ASC, created_at ASC, task_id ASC
            """,
            (owner, status.value),
        ).fetchall()
        return [r[0] for r in rows]

    def append_position(self, conn: sqlite3.Connection, owner: str, status: TaskStatus) -> int:
        """Index at the end of a column (its current size)."""
        row = conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE created_by = ? AND status = ?",
            (owner, status.value),
        ).fetchone()
        return row[0]

    def reposition(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        to_status: TaskStatus,
        target_index: Optional[int] = None,
    ) -> int:
        """
        Move a task to target_index in to_status. Without an index the task
        goes to the end of a new column, or keeps its place in its own column.

        Moving within a column shifts only the tasks between the old and new
        index. Moving across columns inserts into the destination and compacts
        the origin. Returns the task's new position.
        """
        if target_index is not None:
            try:
                target_index = int(target_index)
            except (TypeError, ValueError):
                raise ValidationError(f"Position must be an integer, got: {target_index!r}")
            if target_index < 0:
                raise ValidationError(f"Position must be >= 0, got: {target_index}")

        row = conn.execute(
            "SELECT created_by, status FROM tasks WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Task not found: {task_id}")
        owner = row[0]
        from_status = TaskStatus(row[1])

        origin = [t for t in self.column(conn, owner, from_status) if t != task_id]

        if from_status == to_status:
            if target_index is None:
                # No index given: stays where it is
                return self.column(conn, owner, to_status).index(task_id)
            index = min(target_index, len(origin))
            origin.insert(index, task_id)
            self._write_order(conn, owner, to_status, origin)
            return index

        destination = self.column(conn, owner, to_status)
        index = len(destination) if target_index is None else min(target_index, len(destination))
        destination.insert(index, task_id)

        conn.execute("UPDATE tasks SET position = ? WHERE task_id = ?", (PARKED, task_id))
        self._write_order(conn, owner, from_status, origin)
        self._write_order(conn, owner, to_status, destination, moving=task_id)
        return index

    def compact(self, conn: sqlite3.Connection, owner: str, status: TaskStatus) -> List[str]:
        """Renumber a column to 0..n-1, keeping its current order."""
        order = self.column(conn, owner, status)
        self._write_order(conn, owner, status, order)
        return order

    def _write_order(
        self,
        conn: sqlite3.Connection,
        owner: str,
        status: TaskStatus,
        order: List[str],
        moving: Optional[str] = None,
    ):
        current: Dict[str, int] = {
            r[0]: r[1]
            for r in conn.execute(
                "SELECT task_id, position FROM tasks WHERE created_by = ? AND status = ?",
                (owner, status.value),
            ).fetchall()
        }
        changed = [
            (task_id, index)
            for index, task_id in enumerate(order)
            if task_id == moving or current.get(task_id) != index
        ]
        if not changed:
            return

        # Pass 1: park every changed row at a distinct negative slot
        for task_id, index in changed:
            conn.execute(
                "UPDATE tasks SET status = ?, position = ? WHERE task_id = ?",
                (status.value, -(index + 2), task_id),
            )
        # Pass 2: final positions (only unchanged rows still hold non-negative slots)
        for task_id, index in changed:
            conn.execute(
                "UPDATE tasks SET position = ? WHERE task_id = ?",
                (index, task_id),
            )
