"""Tests for the margin guard server entry point."""

from __future__ import annotations

import json
import types
from pathlib import Path

import pytest

pytest.importorskip("fastapi")

from margin_guard import web_server  # noqa: E402


@pytest.fixture
def captured(monkeypatch) -> dict:
    calls: dict = {"logging": []}

    def fake_run(app, **kwargs) -> None:
        calls["app"] = app
        calls["kwargs"] = kwargs

    monkeypatch.setattr(web_server, "_import_uvicorn", lambda: types.SimpleNamespace(run=fake_run))
    monkeypatch.setattr(web_server, "configure_default_logging", calls["logging"].append)
    for key in ("MARGIN_GUARD_DEBUG", "MARGIN_GUARD_DRY_RUN", "MARGIN_GUARD_POLL_INTERVAL_MS"):
        monkeypatch.delenv(key, raising=False)
    return calls


def test_parser_defaults() -> None:
    args = web_server.build_parser().parse_args([])

    assert args.config is None
    assert args.host == "0.0.0.0"
    assert args.port == 8000
    assert args.dry_run is False
    assert args.reload is False


def test_main_builds_app_and_runs_uvicorn(captured: dict) -> None:
    web_server.main(["--host", "127.0.0.1", "--port", "9000", "--dry-run"])

    engine = captured["app"].state.engine
    assert engine.config.execution.dry_run is True
    assert captured["kwargs"] == {"host": "127.0.0.1", "port": 9000, "reload": False, "log_level": "info"}
    assert captured["logging"] == [1]


def test_main_loads_config_file_and_environment(tmp_path: Path, monkeypatch, captured: dict) -> None:
    config_path = tmp_path / "margin_guard.json"
    config_path.write_text(json.dumps({"monitor": {"interval_ms": 2000}, "debug_level": 1}), encoding="utf-8")
    monkeypatch.setenv("MARGIN_GUARD_DEBUG", "2")

    web_server.main(["--config", str(config_path)])

    engine = captured["app"].state.engine
    assert engine.config.monitor.interval_ms == 2000
    assert engine.config.execution.dry_run is False
    assert captured["kwargs"]["log_level"] == "debug"
    assert captured["logging"] == [2]
