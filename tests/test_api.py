"""Tests for the HTTP surface consumed by the dashboard."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import subtree_mirror as sm

from conftest import GRACE, SLOW_SCRIPT, wait_until


@pytest.fixture
def client(cfg, manager):
    return TestClient(sm.create_app(cfg, manager))


@pytest.fixture
def remote(remote_listing, fake_rsync, data_path):
    (data_path / "a").mkdir()
    remote_listing(["/", "/a", "/a/b", "/c"])
    return fake_rsync(SLOW_SCRIPT)


class TestDirs:
    def test_lists_status(self, client, remote):
        r = client.get("/api/dirs")

        assert r.status_code == 200
        assert r.json() == {
            "results": [
                {"path": "/", "synced": False},
                {"path": "/a", "synced": False},
                {"path": "/a/b", "synced": False},
                {"path": "/c", "synced": False},
            ]
        }

    def test_listing_failure_is_server_error(self, client, remote_listing):
        remote_listing([], returncode=255)

        r = client.get("/api/dirs")

        assert r.status_code == 500
        assert "exited with status 255" in r.json()["error"]


class TestSyncLifecycle:
    def test_start_list_cancel(self, client, remote):
        r = client.post("/api/sync", json={"path": "/a"})
        assert r.status_code == 200
        assert r.json() == {}

        r = client.get("/api/syncs")
        assert r.status_code == 200
        assert r.json() == {
            "results": [{"path": "/a", "progress": 0, "speed": 0, "downloaded": 0, "time_left": ""}]
        }

        r = client.post("/api/cancel", json={"path": "/a"})
        assert r.status_code == 200
        assert r.json() == {}
        assert wait_until(lambda: client.get("/api/syncs").json()["results"] == [], timeout=GRACE + 3)

    def test_invalid_path(self, client, remote):
        r = client.post("/api/sync", json={"path": "/nope"})

        assert r.status_code == 400
        assert r.json() == {"error": "invalid path"}

    def test_conflict(self, client, remote):
        client.post("/api/sync", json={"path": "/a"})

        r = client.post("/api/sync", json={"path": "/a/b"})

        assert r.status_code == 409
        assert r.json() == {"error": "sync already started"}

    def test_cancel_unknown_is_ok(self, client, remote):
        r = client.post("/api/cancel", json={"path": "/never-started"})

        assert r.status_code == 200
        assert r.json() == {}

    def test_missing_body_field_rejected(self, client, remote):
        r = client.post("/api/sync", json={})

        assert r.status_code == 422


class TestRemove:
    def test_removes_local_copy(self, client, remote, data_path):
        r = client.post("/api/remove", json={"path": "/a"})

        assert r.status_code == 200
        assert not (data_path / "a").exists()

    def test_invalid_path(self, client, remote):
        r = client.post("/api/remove", json={"path": "/c"})

        assert r.status_code == 400
        assert r.json() == {"error": "invalid path"}

    def test_sync_in_progress(self, client, remote, data_path):
        client.post("/api/sync", json={"path": "/a"})

        r = client.post("/api/remove", json={"path": "/a"})

        assert r.status_code == 409
        assert r.json() == {"error": "sync in progress"}
        assert (data_path / "a").is_dir()


class TestMisc:
    def test_health(self, client):
        r = client.get("/api/health")

        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_requests_are_logged(self, client, log_messages):
        client.get("/api/health")

        assert any(m.startswith("INFO REQUEST") for m in log_messages)

    def test_lifespan_shutdown_cancels_syncs(self, cfg, manager, remote):
        with TestClient(sm.create_app(cfg, manager)) as c:
            assert c.post("/api/sync", json={"path": "/c"}).status_code == 200

        assert manager.list() == []

    def test_lifespan_shutdown_runs_off_the_event_loop(self, cfg, manager, monkeypatch):
        real_shutdown = manager.shutdown
        seen = []

        def shutdown(timeout=None):
            try:
                asyncio.get_running_loop()
                seen.append("event loop")
            except RuntimeError:
                seen.append("worker thread")
            return real_shutdown(timeout=timeout)

        monkeypatch.setattr(manager, "shutdown", shutdown)
        with TestClient(sm.create_app(cfg, manager)) as c:
            assert c.get("/api/health").status_code == 200

        assert seen == ["worker thread"]
