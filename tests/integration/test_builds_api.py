"""HTTP surface tests for build submission, status, cancel and health."""

from __future__ import annotations

import time

from fastapi.testclient import TestClient

from gdbuild.main import create_app
from tests.support import make_game


def _wait_for_status(client: TestClient, job_id: str, *, timeout: float = 15.0) -> dict:
  deadline = time.monotonic() + timeout
  while True:
    response = client.get(f"/v1/builds/{job_id}")
    assert response.status_code == 200
    body = response.json()
    if body["status"] in {"succeeded", "failed", "cancelled"}:
      return body
    assert time.monotonic() < deadline, f"job {job_id} still {body['status']}"
    time.sleep(0.05)


def test_submit_and_poll_preview(settings) -> None:
  with TestClient(create_app(settings)) as client:
    response = client.post("/v1/builds", json={"kind": "preview", "session_id": "api-1", "game_json": make_game("Api Game")})
    assert response.status_code == 202
    assert response.headers["x-request-id"]
    job = response.json()
    assert job["kind"] == "preview"
    assert job["queue_name"] == "gdevelop-previews"

    body = _wait_for_status(client, job["job_id"])
    assert body["status"] == "succeeded"
    assert body["result_path"]
    assert body["debug"] is None


def test_failed_build_exposes_classification_and_debug_in_debug_mode(make_settings) -> None:
  with TestClient(create_app(make_settings(debug="true"))) as client:
    response = client.post("/v1/builds", json={"kind": "export", "session_id": "api-2", "game_json": make_game("Missing", behavior="enoent"), "options": {"compression_level": "maximum"}})
    assert response.status_code == 202
    body = _wait_for_status(client, response.json()["job_id"])
    assert body["status"] == "failed"
    assert body["error"]["category"] == "missing_binary"
    assert body["error"]["retryable"] is False
    assert body["debug"]["exit_code"] == 1


def test_invalid_game_json_returns_422_with_errors(settings) -> None:
  game = make_game()
  del game["properties"]["projectUuid"]
  with TestClient(create_app(settings)) as client:
    response = client.post("/v1/builds", json={"kind": "preview", "session_id": "api-3", "game_json": game}, headers={"x-request-id": "req-123"})
  assert response.status_code == 422
  body = response.json()
  assert body["requestId"] == "req-123"
  assert any(error.startswith("properties.projectUuid") for error in body["detail"])


def test_request_shape_errors_are_sanitized(settings) -> None:
  with TestClient(create_app(settings)) as client:
    response = client.post("/v1/builds", json={"kind": "bundle", "session_id": "api-4", "game_json": make_game()})
  assert response.status_code == 422
  assert all("input" not in error for error in response.json()["detail"])


def test_invalid_session_id_returns_422(settings) -> None:
  with TestClient(create_app(settings)) as client:
    response = client.post("/v1/builds", json={"kind": "preview", "session_id": "../../etc", "game_json": make_game()})
  assert response.status_code == 422
  assert "Invalid session id" in response.json()["detail"]


def test_unknown_job_returns_404(settings) -> None:
  with TestClient(create_app(settings)) as client:
    response = client.get("/v1/builds/does-not-exist")
    assert response.status_code == 404
    cancel = client.post("/v1/builds/does-not-exist/cancel")
    assert cancel.status_code == 404


def test_admission_limit_returns_429_and_cancel(make_settings) -> None:
  with TestClient(create_app(make_settings(max_concurrent_operations="2", process_pool_size="1"))) as client:
    first = client.post("/v1/builds", json={"kind": "preview", "session_id": "api-5", "game_json": make_game("One", behavior="slow")}).json()
    second = client.post("/v1/builds", json={"kind": "preview", "session_id": "api-5", "game_json": make_game("Two")}).json()
    assert second["status"] == "queued"

    rejected = client.post("/v1/builds", json={"kind": "preview", "session_id": "api-5", "game_json": make_game("Three")})
    assert rejected.status_code == 429
    assert "Concurrency limit reached" in rejected.json()["detail"]

    cancelled = client.post(f"/v1/builds/{second['job_id']}/cancel")
    assert cancelled.json() == {"job_id": second["job_id"], "cancelled": True, "status": "cancelled"}
    running = client.post(f"/v1/builds/{first['job_id']}/cancel")
    assert running.json()["cancelled"] is False
    _wait_for_status(client, first["job_id"])


def test_health_and_stats(settings) -> None:
  with TestClient(create_app(settings)) as client:
    health = client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "unknown"
    assert body["pool"]["pool_size"] == 3
    assert body["queues"]["max_concurrent_operations"] == 5

    stats = client.get("/v1/stats").json()
    assert set(stats) == {"queues", "pool", "cache", "metrics"}
    assert set(stats["cache"]["tiers"]) == {"templates", "game_structure", "validation", "assets"}


def test_disabled_engine_returns_503(make_settings) -> None:
  with TestClient(create_app(make_settings(enabled="false"))) as client:
    response = client.post("/v1/builds", json={"kind": "preview", "session_id": "api-6", "game_json": make_game()})
  assert response.status_code == 503
