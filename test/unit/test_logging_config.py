"""Unit tests for logging configuration and run context binding."""

from __future__ import annotations

import contextvars
import json
import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from observability.context import get_context, run_log_context, set_service_name
from observability.logging_config import configure_logging


@pytest.fixture()
def restore_root_logging():
    """Restore root handlers after a test reconfigures logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _isolated(fn):
    return contextvars.Context().run(fn)


def test_configure_logging_installs_single_json_handler(restore_root_logging, capsys) -> None:
    """Repeated configuration keeps one handler emitting JSON with run fields."""

    def body() -> None:
        configure_logging(level="info", json_output=True, service="engine-test")
        configure_logging(level="info", json_output=True, service="engine-test")
        with run_log_context("nba:u1:command_center:default:2026-03-01", "u1", "command_center"):
            logging.getLogger("engine.test").info("hello")

    _isolated(body)

    assert len(logging.getLogger().handlers) == 1
    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["message"] == "hello"
    assert payload["service"] == "engine-test"
    assert payload["run_key"] == "nba:u1:command_center:default:2026-03-01"
    assert payload["scope"] == "command_center"


def test_plain_output_appends_run_fields(restore_root_logging, capsys) -> None:
    """Plain output keeps the message and appends bound fields."""

    def body() -> None:
        configure_logging(level="debug", json_output=False, service=None)
        with run_log_context("r1", "u1", "founder_growth"):
            logging.getLogger("engine.test").debug("plain")

    _isolated(body)

    line = capsys.readouterr().out.strip().splitlines()[-1]
    assert "plain" in line
    assert line.endswith("actor=u1 run_key=r1 scope=founder_growth")


def test_run_context_is_scoped_to_the_block() -> None:
    """Run fields disappear after the block; the service name stays."""

    def body() -> tuple[dict, dict]:
        set_service_name("engine")
        with run_log_context("r1", "u1", "command_center"):
            inside = get_context()
        return inside, get_context()

    inside, after = _isolated(body)

    assert inside == {
        "service": "engine",
        "run_key": "r1",
        "actor": "u1",
        "scope": "command_center",
    }
    assert after == {"service": "engine"}


def test_run_context_reaches_copied_worker_threads() -> None:
    """Work submitted with a copied context sees the caller's run fields."""

    def body() -> dict:
        with run_log_context("r1", "u1", "command_center"):
            ctx = contextvars.copy_context()
            with ThreadPoolExecutor(max_workers=1) as executor:
                return executor.submit(ctx.run, get_context).result()

    assert _isolated(body)["run_key"] == "r1"
