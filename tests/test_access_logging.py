import json
import logging

from fastapi import FastAPI, Request
from starlette.testclient import TestClient

from switchboard.app_logging import _install_access_logging


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.post("/api/queues/1/items/2/claim")
    async def claim(request: Request):
        return {"rid": request.state.request_id}

    @app.get("/api/health")
    async def health():  # pragma: no cover - simple
        return {"status": "ok"}

    @app.get("/api/metrics")
    async def metrics():  # pragma: no cover - simple
        return {}

    _install_access_logging(app)
    return app


def test_access_logging_request_id_and_scrubbing(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post(
            "/api/queues/1/items/2/claim",
            json={"actor_id": 7, "access_token": "secret"},
            headers={"X-Request-Id": "abc", "X-Api-Key": "k-123"},
        )

        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"] == "abc"
        assert resp.json() == {"rid": "abc"}

        data = json.loads(caplog.records[0].getMessage())
        assert data["request_id"] == "abc"
        assert data["method"] == "POST"
        assert data["status"] == 200
        assert data["headers"]["x-api-key"] == "***"
        assert data["body"] == {"actor_id": 7, "access_token": "***"}


def test_request_id_is_generated_and_probes_are_skipped(caplog, monkeypatch):
    monkeypatch.delenv("LOG_REQUEST_BODIES", raising=False)
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post("/api/queues/1/items/2/claim", json={"actor_id": 7})
        generated = resp.headers["X-Request-Id"]
        assert len(generated) == 32

        data = json.loads(caplog.records[0].getMessage())
        assert data["request_id"] == generated
        assert "body" not in data

        caplog.clear()
        client.get("/api/health")
        client.get("/api/metrics")
        assert len(caplog.records) == 0
