"""Tests for the acp-remote command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from acp_remote.__main__ import main


class TestAgentsCommand:
    def test_prints_catalogue(self, acp_config_path: Path, monkeypatch, capsys):
        monkeypatch.setenv("ACP_CONFIG", str(acp_config_path))
        main(["agents"])
        output = json.loads(capsys.readouterr().out)
        assert [agent["name"] for agent in output["agents"]] == ["Fake"]

    def test_missing_catalogue(self, tmp_path: Path, monkeypatch, capsys):
        monkeypatch.setenv("ACP_CONFIG", str(tmp_path / "absent.json"))
        with pytest.raises(SystemExit) as excinfo:
            main(["agents"])
        assert excinfo.value.code == 1
        assert "ACP config not found" in capsys.readouterr().err


class TestServeCommand:
    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1
        assert "serve" in capsys.readouterr().out

    def test_serve_applies_overrides(self, acp_config_path: Path, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("ACP_CONFIG", str(acp_config_path))
        settings = tmp_path / "settings.json"
        settings.write_text(json.dumps({"port": 4000, "verbose": False}))
        calls = {}

        def fake_run(app, host, port, log_level):
            calls.update(app=app, host=host, port=port, log_level=log_level)

        monkeypatch.setattr("uvicorn.run", fake_run)
        monkeypatch.setattr("acp_remote.__main__._configure_logging", lambda level, verbose: None)
        main(["serve", "--config", str(settings), "--host", "127.0.0.1", "--log-level", "WARNING"])

        assert calls["host"] == "127.0.0.1"
        assert calls["port"] == 4000
        assert calls["log_level"] == "warning"
        assert calls["app"].state.config.remote_config_path == settings
