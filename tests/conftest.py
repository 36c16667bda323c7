"""Shared fixtures: a temporary database and a small static directory."""

import sys
import tempfile
from pathlib import Path

import pytest

# Ensure the repo root is importable when running without an install
sys.path.insert(0, str(Path(__file__).parent.parent))

from crewboard.directory import StaticDirectory
from crewboard.events import ChangeNotifier
from crewboard.notifications import NotificationSink
from crewboard.store import TaskStore

CAROL = "carol@example.com"   # creator
ALICE = "alice@example.com"   # direct assignee, Design member
BOB = "bob@example.com"       # Design member
DAVE = "dave@example.com"     # unrelated


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        path = tmp.name
    try:
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            Path(path + suffix).unlink(missing_ok=True)


@pytest.fixture
def directory():
    return StaticDirectory(users=[CAROL, ALICE, BOB, DAVE], teams={"Design": [ALICE, BOB]})


@pytest.fixture
def notifier():
    return ChangeNotifier(queue_size=64)


@pytest.fixture
def sink(db_path):
    return NotificationSink(db_path)


@pytest.fixture
def store(db_path, directory, notifier, sink):
    return TaskStore(db_path, directory=directory, notifier=notifier, sink=sink)
