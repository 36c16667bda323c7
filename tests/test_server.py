"""
Tests for the Flask API: auth, per-viewer responses and error bodies.
"""
import json
from unittest import mock

import pytest

from crewboard.config import Config
from crewboard.directory import StaticDirectory
from crewboard.errors import TransientResolutionFailure
from task_server import create_app

CAROL = "carol@example.com"
ALICE = "alice@example.com"
BOB = "bob@example.com"
DAVE = "dave@example.com"
SECRET = "test-secret"


@pytest.fixture
def app(db_path):
    cfg = Config(db_path=db_path, api_secret=SECRET)
    directory = StaticDirectory(users=[CAROL, ALICE, BOB, DAVE], teams={"Design": [ALICE, BOB]})
    app = create_app(cfg, directory=directory, deliveries=[])
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def headers(user):
    return {"X-API-Key": SECRET, "X-User": user}


def create(client, title="Ship report", assigned_to=None, user=CAROL, **fields):
    body = dict(fields, title=title, assigned_to=assigned_to or [])
    r = client.post("/api/tasks", json=body, headers=headers(user))
    assert r.status_code == 201, r.get_json()
    return r.get_json()["task"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_missing_api_key_is_401(client):
    r = client.get("/api/tasks", headers={"X-User": CAROL})
    assert r.status_code == 401
    assert r.get_json()["error"]["code"] == "UNAUTHORIZED"


def test_wrong_api_key_is_403(client):
    r = client.get("/api/tasks", headers={"X-API-Key": "nope", "X-User": CAROL})
    assert r.status_code == 403


def test_missing_user_is_validation_error(client):
    r = client.get("/api/tasks", headers={"X-API-Key": SECRET})
    assert r.status_code == 400
    assert r.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_health_is_open(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_dual_perspective_over_http(client):
    task = create(client, assigned_to=[ALICE, "team:Design"])
    assert task["role"] == "creator"
    assert task["display_status"] == "backlog"
    assert task["assigned_to"] == [ALICE, "team:Design"]

    r = client.post(f"/api/tasks/{task['task_id']}/my-status", json={"status": "done"}, headers=headers(ALICE))
    assert r.status_code == 200
    assert r.get_json()["task"]["display_status"] == "done"

    carol = client.get(f"/api/tasks/{task['task_id']}", headers=headers(CAROL)).get_json()["task"]
    bob = client.get(f"/api/tasks/{task['task_id']}", headers=headers(BOB)).get_json()["task"]
    assert carol["display_status"] == "backlog"
    assert bob["display_status"] == "backlog"
    assert bob["role"] == "assignee"


def test_unrelated_user_gets_permission_denied_and_not_found(client):
    task = create(client, assigned_to=[ALICE])
    r = client.post(f"/api/tasks/{task['task_id']}/status", json={"status": "done"}, headers=headers(DAVE))
    assert r.status_code == 403
    assert r.get_json()["error"] == {
        "code": "PERMISSION_DENIED",
        "message": f"Only the creator can change the status of task {task['task_id']}",
        "retryable": False,
    }
    assert client.get(f"/api/tasks/{task['task_id']}", headers=headers(DAVE)).status_code == 404
    assert client.get("/api/tasks", headers=headers(DAVE)).get_json()["count"] == 0


def test_unknown_assignee_is_400(client):
    r = client.post("/api/tasks", json={"title": "x", "assigned_to": ["ghost@example.com"]},
                    headers=headers(CAROL))
    assert r.status_code == 400
    body = r.get_json()["error"]
    assert body["retryable"] is False
    assert "ghost@example.com" in body["message"]


def test_edit_move_and_delete(client):
    task = create(client)
    task_id = task["task_id"]

    r = client.put(f"/api/tasks/{task_id}", json={"title": "Ship final report"}, headers=headers(CAROL))
    assert r.get_json()["task"]["title"] == "Ship final report"

    r = client.post(f"/api/tasks/{task_id}/status", json={"status": "review", "position": 0},
                    headers=headers(CAROL))
    assert r.get_json()["task"]["status"] == "review"

    assert client.delete(f"/api/tasks/{task_id}", headers=headers(CAROL)).status_code == 200
    r = client.delete(f"/api/tasks/{task_id}", headers=headers(CAROL))
    assert r.status_code == 200
    assert r.get_json()["task"]["status"] == "hidden"
    assert client.get("/api/tasks", headers=headers(CAROL)).get_json()["count"] == 0


def test_write_succeeds_when_directory_fails_after_commit(app, client):
    task = create(client, assigned_to=["team:Design"])
    directory = app.extensions["crewboard"].store.directory
    with mock.patch.object(directory, "team_members", side_effect=TransientResolutionFailure("down")):
        r = client.put(f"/api/tasks/{task['task_id']}", json={"title": "renamed"}, headers=headers(CAROL))
    assert r.status_code == 200
    assert r.get_json()["task"]["title"] == "renamed"
    assert app.extensions["crewboard"].store.get_task(task["task_id"]).title == "renamed"


def test_assignments_endpoint(client):
    task = create(client)
    r = client.post(f"/api/tasks/{task['task_id']}/assignments",
                    json={"add": [DAVE]}, headers=headers(CAROL))
    assert r.get_json()["task"]["assigned_to"] == [DAVE]
    assert client.get("/api/tasks", headers=headers(DAVE)).get_json()["count"] == 1


def test_board_groups_by_display_status(client):
    first = create(client, title="a", assigned_to=[ALICE])
    create(client, title="b", assigned_to=[ALICE])
    client.post(f"/api/tasks/{first['task_id']}/my-status", json={"status": "in_progress"}, headers=headers(ALICE))

    columns = client.get("/api/board", headers=headers(ALICE)).get_json()["columns"]
    assert [t["title"] for t in columns["in_progress"]] == ["a"]
    assert [t["title"] for t in columns["backlog"]] == ["b"]
    assert "hidden" not in columns


def test_status_required(client):
    task = create(client)
    r = client.post(f"/api/tasks/{task['task_id']}/status", json={}, headers=headers(CAROL))
    assert r.status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Notifications and jobs
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_assignment_notification_and_mark_read(client):
    create(client, assigned_to=[ALICE])
    body = client.get("/api/notifications", headers=headers(ALICE)).get_json()
    assert body["unread"] == 1
    notification = body["notifications"][0]
    assert notification["type"] == "assigned"

    r = client.post("/api/notifications/read", json={"notification_id": notification["notification_id"]},
                    headers=headers(ALICE))
    assert r.get_json() == {"marked": 1}
    assert client.get("/api/notifications?unread=1", headers=headers(ALICE)).get_json()["notifications"] == []

    r = client.post("/api/notifications/read", json={"notification_id": notification["notification_id"]},
                    headers=headers(BOB))
    assert r.status_code == 404


def test_deadline_job_endpoint(client):
    create(client, due_date="2020-01-01T00:00:00Z")
    report = client.post("/api/jobs/deadlines", headers=headers(CAROL)).get_json()
    assert report["tasks"] == 1
    assert report["sent"] == 1
    again = client.post("/api/jobs/deadlines", headers=headers(CAROL)).get_json()
    assert again["deduplicated"] == 1


def test_stream_starts_with_full_load(client):
    task = create(client, assigned_to=[ALICE])
    r = client.get("/api/stream?max_batches=1", headers=headers(ALICE))
    assert r.mimetype == "text/event-stream"
    body = r.get_data(as_text=True)
    assert "event: insert" in body
    data_line = [line for line in body.splitlines() if line.startswith("data: ")][0]
    payload = json.loads(data_line[len("data: "):])
    assert payload["task_id"] == task["task_id"]
    assert payload["task"]["display_status"] == "backlog"
