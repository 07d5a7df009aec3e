import json
import logging
from logging.handlers import TimedRotatingFileHandler

import pytest
from starlette.testclient import TestClient

from switchboard.app_logging import APP_LOGGER_NAME, JsonFormatter, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    yield tmp_path
    _clear_handlers(APP_LOGGER_NAME)
    _clear_handlers("uvicorn.access")


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    app_logger = _clear_handlers(APP_LOGGER_NAME)
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    app_handler = next(
        h for h in app_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert app_handler.when == "MIDNIGHT"
    assert app_handler.backupCount == 5
    assert app_logger.level == logging.DEBUG

    access_handler = next(
        h for h in access_logger.handlers if isinstance(h, TimedRotatingFileHandler)
    )
    assert access_handler.backupCount == 5


def test_module_loggers_write_to_app_log(log_dir, app_factory):
    _clear_handlers(APP_LOGGER_NAME)
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    logging.getLogger("switchboard.lifecycle.service").info("Queue item claimed")

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"password": "hunter2", "value": 1},
            headers={"Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200

    for name in (APP_LOGGER_NAME, "uvicorn.access"):
        for handler in logging.getLogger(name).handlers:
            handler.flush()

    app_log = (log_dir / "app.log").read_text()
    assert "Queue item claimed" in app_log
    assert "switchboard.lifecycle.service" in app_log

    access_line = (log_dir / "access.log").read_text().splitlines()[-1]
    data = json.loads(access_line.split(": ", 1)[1])
    assert data["headers"]["authorization"] == "***"
    assert data["body"]["password"] == "***"


def test_json_formatter_carries_routing_fields():
    record = logging.LogRecord(
        "switchboard.agents.orchestrator",
        logging.WARNING,
        __file__,
        1,
        "Unable to resolve queue for agent handoff",
        None,
        None,
    )
    record.conversation_id = 42
    record.transition = "enqueue_for_human"

    data = json.loads(JsonFormatter().format(record))

    assert data["level"] == "WARNING"
    assert data["logger"] == "switchboard.agents.orchestrator"
    assert data["conversation_id"] == 42
    assert data["transition"] == "enqueue_for_human"
    assert "queue_id" not in data


def test_json_logs_enabled_by_env(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_JSON", "true")
    app_logger = _clear_handlers(APP_LOGGER_NAME)

    init_logging()

    assert isinstance(app_logger.handlers[0].formatter, JsonFormatter)
