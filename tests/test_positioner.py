"""
Tests for kanban ordering: dense positions per (creator, status) column.
"""
import random
import threading

import pytest

from crewboard.db import transaction
from crewboard.errors import ValidationError
from crewboard.schema import COLUMN_ORDER, TaskStatus

CAROL = "carol@example.com"
ALICE = "alice@example.com"


def positions(store, owner, status):
    return [t.position for t in store.column(owner, status)]


def ids(store, owner, status):
    return [t.task_id for t in store.column(owner, status)]


def assert_dense(store, owner):
    for status in COLUMN_ORDER + [TaskStatus.HIDDEN]:
        column = positions(store, owner, status)
        assert column == list(range(len(column))), f"{status.value}: {column}"


def test_move_within_column_shifts_only_between(store):
    tasks = [store.create_task(CAROL, {"title": str(i)}) for i in range(5)]
    t = [x.task_id for x in tasks]

    store.transition_canonical_status(CAROL, t[4], "backlog", 1)
    assert ids(store, CAROL, TaskStatus.BACKLOG) == [t[0], t[4], t[1], t[2], t[3]]

    store.transition_canonical_status(CAROL, t[4], "backlog", 3)
    assert ids(store, CAROL, TaskStatus.BACKLOG) == [t[0], t[1], t[2], t[4], t[3]]
    assert_dense(store, CAROL)


def test_move_across_columns_inserts_and_compacts(store):
    tasks = [store.create_task(CAROL, {"title": str(i)}) for i in range(4)]
    t = [x.task_id for x in tasks]

    store.transition_canonical_status(CAROL, t[0], "in_progress")
    store.transition_canonical_status(CAROL, t[1], "in_progress")
    moved = store.transition_canonical_status(CAROL, t[2], "in_progress", 0)

    assert moved.position == 0
    assert ids(store, CAROL, TaskStatus.IN_PROGRESS) == [t[2], t[0], t[1]]
    assert ids(store, CAROL, TaskStatus.BACKLOG) == [t[3]]
    assert_dense(store, CAROL)


def test_target_index_is_clamped_to_column_end(store):
    a = store.create_task(CAROL, {"title": "a"})
    b = store.create_task(CAROL, {"title": "b"})
    moved = store.transition_canonical_status(CAROL, a.task_id, "backlog", 99)
    assert moved.position == 1
    assert ids(store, CAROL, TaskStatus.BACKLOG) == [b.task_id, a.task_id]


def test_same_status_without_index_keeps_place(store):
    a = store.create_task(CAROL, {"title": "a"})
    b = store.create_task(CAROL, {"title": "b"})
    unchanged = store.transition_canonical_status(CAROL, a.task_id, "backlog")
    assert unchanged.position == 0
    assert unchanged.version == a.version
    assert ids(store, CAROL, TaskStatus.BACKLOG) == [a.task_id, b.task_id]


def test_negative_index_rejected_and_rolled_back(store):
    a = store.create_task(CAROL, {"title": "a"})
    with pytest.raises(ValidationError):
        store.transition_canonical_status(CAROL, a.task_id, "review", -1)
    assert store.get_task(a.task_id).status == TaskStatus.BACKLOG


def test_columns_are_scoped_per_creator(store):
    mine = store.create_task(CAROL, {"title": "mine"})
    theirs = store.create_task(ALICE, {"title": "theirs"})
    assert mine.position == 0
    assert theirs.position == 0
    store.transition_canonical_status(CAROL, mine.task_id, "done")
    assert positions(store, ALICE, TaskStatus.BACKLOG) == [0]


def test_failed_write_rolls_back_positions(store, db_path):
    tasks = [store.create_task(CAROL, {"title": str(i)}) for i in range(3)]
    before = ids(store, CAROL, TaskStatus.BACKLOG)

    with pytest.raises(RuntimeError):
        with transaction(db_path) as conn:
            store.positioner.reposition(conn, tasks[0].task_id, TaskStatus.REVIEW, 0)
            raise RuntimeError("simulated failure after renumbering")

    assert ids(store, CAROL, TaskStatus.BACKLOG) == before
    assert store.column(CAROL, TaskStatus.REVIEW) == []


def test_compact_closes_gaps(store, db_path):
    a = store.create_task(CAROL, {"title": "a"})
    b = store.create_task(CAROL, {"title": "b"})
    with transaction(db_path) as conn:
        # Simulate a partial failure that left gaps
        conn.execute("UPDATE tasks SET position = 5 WHERE task_id = ?", (a.task_id,))
        conn.execute("UPDATE tasks SET position = 7 WHERE task_id = ?", (b.task_id,))
        order = store.positioner.compact(conn, CAROL, TaskStatus.BACKLOG)
    assert order == [a.task_id, b.task_id]
    assert positions(store, CAROL, TaskStatus.BACKLOG) == [0, 1]


def test_random_move_sequences_stay_dense(store):
    rng = random.Random(1234)
    task_ids = [store.create_task(CAROL, {"title": f"t{i}"}).task_id for i in range(8)]
    statuses = [s.value for s in COLUMN_ORDER]

    for _ in range(60):
        task_id = rng.choice(task_ids)
        status = rng.choice(statuses)
        index = rng.choice([None, 0, 1, 2, 5, 20])
        store.transition_canonical_status(CAROL, task_id, status, index)
        assert_dense(store, CAROL)

    total = sum(len(store.column(CAROL, s)) for s in COLUMN_ORDER)
    assert total == len(task_ids)


def test_concurrent_moves_serialise_last_committer_wins(store):
    tasks = [store.create_task(CAROL, {"title": str(i)}) for i in range(3)]
    other = store.create_task(CAROL, {"title": "z"})
    store.transition_canonical_status(CAROL, other.task_id, "review")
    task_id = tasks[0].task_id

    barrier = threading.Barrier(2)
    results = {}
    errors = []

    def move(status):
        barrier.wait()
        try:
            results[status] = store.transition_canonical_status(CAROL, task_id, status, 0)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=move, args=(s,)) for s in ("review", "done")]
    for th in threads:
        th.start()
    for th in threads:
        th.join(timeout=30)

    assert errors == []
    review, done = results["review"], results["done"]
    # Each caller sees its own commit
    assert (review.status, review.position) == (TaskStatus.REVIEW, 0)
    assert (done.status, done.position) == (TaskStatus.DONE, 0)
    assert sorted([review.version, done.version]) == [tasks[0].version + 1, tasks[0].version + 2]

    winner = max(results.values(), key=lambda t: t.version)
    final = store.get_task(task_id)
    assert final.status == winner.status
    assert final.version == winner.version
    assert_dense(store, CAROL)
