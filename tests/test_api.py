# tests/test_api.py

from __future__ import annotations

import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from specfleet.config import settings
from specfleet.persistence import DurableStore
from specfleet.server.api.server import create_app

TASKSET_PARAMS = {
    "rsync_name": "webapp",
    "setup_command": "bundle install",
    "slave_command": "bundle exec rspec",
    "worker_type": "default",
    "taskset_class": "webapp-ci",
    "max_workers": 1,
    "max_trials": 2,
    "tasks": ["spec/a_spec.rb"],
}


@pytest.fixture()
def client(tmp_path: Path, redis_client, monkeypatch):
    monkeypatch.setattr(settings, "log_to_file", False)
    monkeypatch.setattr(settings, "execute_log_text_path", str(tmp_path / "logs"))
    durable = DurableStore(f"sqlite:///{tmp_path / 'api.db'}")
    app = create_app(redis_client=redis_client, durable_store=durable, json_cache_path=str(tmp_path / "cache"))
    with TestClient(app) as test_client:
        yield test_client
    durable.dispose()


class RPC:
    """Sends calls over one socket and sorts replies from pushed events."""

    def __init__(self, ws) -> None:
        self.ws = ws
        self.events: list[dict] = []
        self._next_id = 0

    def raw(self, message) -> dict:
        self.ws.send_json(message)
        return self._reply()

    def call(self, method: str, **params) -> dict:
        self._next_id += 1
        reply = self.raw({"id": self._next_id, "method": method, "params": params})
        assert reply["id"] == self._next_id
        return reply

    def result(self, method: str, **params):
        reply = self.call(method, **params)
        assert "error" not in reply, reply
        return reply["result"]

    def _reply(self) -> dict:
        while True:
            message = self.ws.receive_json()
            if "type" in message:
                self.events.append(message)
                continue
            return message


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["redis"] is True


def test_unknown_taskset_cache_is_404(client) -> None:
    assert client.get("/v1/tasksets/taskset:missing").status_code == 404


def test_rpc_errors_carry_codes(client) -> None:
    with client.websocket_connect("/v1/ws") as ws:
        rpc = RPC(ws)

        assert rpc.call("no_such_method")["error"]["code"] == "NOT_FOUND"
        assert rpc.call("dequeue_task", bogus=1)["error"]["code"] == "VALIDATION_ERROR"
        assert rpc.call("create_taskset", **{**TASKSET_PARAMS, "max_trials": 0})["error"]["code"] == "VALIDATION_ERROR"
        assert rpc.call("dequeue_task", taskset="taskset:missing")["error"]["code"] == "NOT_FOUND"
        malformed = rpc.raw({"id": "x", "params": {}})
        assert malformed["id"] == "x"
        assert malformed["error"]["code"] == "VALIDATION_ERROR"


def test_archive_can_be_rerun_over_rpc(client) -> None:
    with client.websocket_connect("/v1/ws") as ws:
        rpc = RPC(ws)
        ts = rpc.result("create_taskset", **TASKSET_PARAMS)

        assert rpc.call("archive_taskset", taskset_key=ts)["error"]["code"] == "INVALID_STATE"

        assert rpc.result("fail_taskset", taskset=ts, reason="cancelled") == "failed"
        summary = rpc.result("archive_taskset", taskset_key=ts)
        assert summary["taskset"] == ts
        assert summary["persisted"] is True
        assert summary["cached"] is True

    assert client.get(f"/v1/tasksets/{ts}").json()["status"] == "failed"


def test_full_run_is_archived_and_served(client) -> None:
    with client.websocket_connect("/v1/ws") as ws:
        rpc = RPC(ws)
        worker = rpc.result("register_worker", worker_name="ci-01", worker_type="default")
        ts = rpc.result("create_taskset", **TASKSET_PARAMS)
        assert rpc.result("listen_to_taskset", taskset=ts) is True
        rpc.result("current_taskset", worker=worker, taskset=ts)
        slave = rpc.result("create_slave", worker=worker, slave_name="1")

        task = rpc.result("dequeue_task", taskset=ts)
        trial = rpc.result("create_trial", task=task, slave=slave, started_at="2024-01-01T10:00:00")
        rpc.result(
            "finish_trial",
            trial=trial,
            finished_at=None,
            status="passed",
            stdout="1 example, 0 failures",
            stderr="",
            passed_count=1,
            pending_count=0,
            failed_count=0,
        )
        assert rpc.result("dequeue_task", taskset=ts) is None
        assert rpc.result("query_taskset_status", taskset=ts)["status"] == "finished"

        for _ in range(20):
            if "taskset_finished" in [event["type"] for event in rpc.events]:
                break
            rpc.result("query_taskset_status", taskset=ts)
        assert [event["type"] for event in rpc.events][:2] == ["task_dequeued", "trial_started"]
        assert "taskset_finished" in [event["type"] for event in rpc.events]

    response = None
    for _ in range(50):
        response = client.get(f"/v1/tasksets/{ts}")
        if response.status_code == 200:
            break
        time.sleep(0.1)
    assert response.status_code == 200
    document = response.json()
    assert document["is_full"] is True
    assert document["key"] == ts
    assert document["status"] == "finished"
    assert document["tasks"][0]["trials"][0]["stdout"] == "1 example, 0 failures"
    assert document["slaves"][0]["key"] == slave

    compressed = client.get(f"/v1/tasksets/{ts}", headers={"Accept-Encoding": "gzip"})
    assert compressed.headers["content-encoding"] == "gzip"
    assert compressed.json() == document
