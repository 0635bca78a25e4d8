"""Tests for the command-line entry point."""

from __future__ import annotations

import pytest

import main
from conftest import ScriptedResponse


def test_config_flags_are_clamped() -> None:
    args = main.build_parser().parse_args([
        "--endpoint", "http://localhost:11434/v1",
        "--model", "m",
        "--max-code-rounds", "500",
        "--timeout-seconds", "30",
        "--temperature", "0.2",
    ])
    config = main.chat_config_from_args(args)
    assert config.max_code_rounds == 50
    assert config.timeout_seconds == 30
    assert config.temperature == 0.2


def test_list_models(llm_server, capsys) -> None:
    llm_server.script(ScriptedResponse(200, {"data": [{"id": "zeta"}, {"id": "alpha"}]}))

    exit_code = main.main(["--endpoint", llm_server.url, "--list-models", "--no-color"])

    assert exit_code == 0
    assert capsys.readouterr().out.splitlines() == ["alpha", "zeta"]


def test_list_models_failure(llm_server, capsys) -> None:
    llm_server.script(ScriptedResponse(401, "denied"))

    exit_code = main.main(["--endpoint", llm_server.url, "--list-models", "--no-color"])

    assert exit_code == 1
    assert "Authentication failed" in capsys.readouterr().out


def test_missing_model_is_an_error(llm_server, monkeypatch) -> None:
    monkeypatch.setattr(main.config, "MODEL", "")
    with pytest.raises(SystemExit):
        main.main(["--endpoint", llm_server.url])
