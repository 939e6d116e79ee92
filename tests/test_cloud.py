"""Tests for the control plane API (event intake, status, cancellation)."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="pipewave-cloud-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'control.db'}")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from fastapi.testclient import TestClient  # noqa: E402

from cloud.app import redisq  # noqa: E402
from cloud.app.main import app  # noqa: E402


class FakeCancelFlags:
    """In-process stand-in for the redis cancel flags."""

    def __init__(self):
        self.flags: set[str] = set()

    async def request_cancel(self, run_id: str) -> None:
        self.flags.add(run_id)

    async def is_cancelled(self, run_id: str) -> bool:
        return run_id in self.flags


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def flags(monkeypatch):
    fake = FakeCancelFlags()
    monkeypatch.setattr(redisq, "request_cancel", fake.request_cancel)
    monkeypatch.setattr(redisq, "is_cancelled", fake.is_cancelled)
    return fake


def new_event(client, repo="acme/widgets", branch="dev", kind="push", ref="abc123"):
    resp = client.post(
        "/events",
        json={"repo": repo, "kind": kind, "target_branch": branch, "commit_reference": ref},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestEvents:
    def test_event_records_a_pending_run(self, client):
        run_id = new_event(client, repo="acme/one")["run_id"]
        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "pending"
        assert run["branch"] == "dev"
        assert run["commit_ref"] == "abc123"
        assert run["jobs"] == {}

    def test_unknown_event_kind(self, client):
        resp = client.post("/events", json={"repo": "r", "kind": "schedule", "target_branch": "dev"})
        assert resp.status_code == 400

    def test_newer_event_supersedes_unfinished_run(self, client, flags):
        old = new_event(client, repo="acme/two")["run_id"]
        newer = new_event(client, repo="acme/two")

        assert newer["superseded"] == [old]
        assert client.get(f"/runs/{old}/cancelled").json() == {"cancelled": True}
        assert client.get(f"/runs/{newer['run_id']}/cancelled").json() == {"cancelled": False}
        assert client.get(f"/runs/{old}").json()["superseded_by"] == newer["run_id"]

    def test_other_branches_are_left_alone(self, client):
        main = new_event(client, repo="acme/three", branch="main")["run_id"]
        new_event(client, repo="acme/three", branch="dev")
        assert client.get(f"/runs/{main}/cancelled").json() == {"cancelled": False}

    def test_finished_runs_are_not_superseded(self, client):
        done = new_event(client, repo="acme/four")["run_id"]
        client.post(f"/runs/{done}/status", json={"status": "succeeded", "state": "success"})
        assert new_event(client, repo="acme/four")["superseded"] == []


class TestStatus:
    def test_job_updates_are_merged(self, client):
        run_id = new_event(client, repo="acme/five")["run_id"]
        client.post(
            f"/runs/{run_id}/status",
            json={"status": "running", "state": "pending", "jobs": {"a": {"status": "running", "state": "pending"}}},
        )
        client.post(
            f"/runs/{run_id}/status",
            json={
                "status": "running",
                "state": "pending",
                "jobs": {
                    "b": {"status": "failed", "state": "failure", "detail": "Test: exit code 1", "failed_step": "Test"}
                },
            },
        )
        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "running"
        assert run["jobs"]["a"]["status"] == "running"
        assert run["jobs"]["b"] == {
            "status": "failed",
            "state": "failure",
            "detail": "Test: exit code 1",
            "failed_step": "Test",
        }

    def test_final_status(self, client):
        run_id = new_event(client, repo="acme/six")["run_id"]
        resp = client.post(
            f"/runs/{run_id}/status",
            json={"status": "failed", "state": "failure", "detail": "failed jobs: b"},
        )
        assert resp.status_code == 200
        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "failed"
        assert run["detail"] == "failed jobs: b"

        again = client.post(f"/runs/{run_id}/status", json={"status": "succeeded", "state": "success"})
        assert again.status_code == 409

    def test_unknown_run(self, client):
        assert client.get("/runs/does-not-exist").status_code == 404
        resp = client.post("/runs/does-not-exist/status", json={"status": "running", "state": "pending"})
        assert resp.status_code == 404


class TestCancel:
    def test_cancel_sets_the_flag(self, client):
        run_id = new_event(client, repo="acme/seven")["run_id"]
        assert client.post(f"/runs/{run_id}/cancel").status_code == 200
        assert client.get(f"/runs/{run_id}/cancelled").json() == {"cancelled": True}

    def test_cannot_cancel_a_finished_run(self, client):
        run_id = new_event(client, repo="acme/eight")["run_id"]
        client.post(f"/runs/{run_id}/status", json={"status": "succeeded", "state": "success"})
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409

    def test_cancel_unknown_run(self, client):
        assert client.post("/runs/nope/cancel").status_code == 404
