"""Tests for config.json loading and limit overrides."""

from __future__ import annotations

import json

import pytest

import config
from analyst.chat_config import ChatConfig
from analyst.limits import DEFAULTS, get_limit, trunc


@pytest.fixture()
def user_config(tmp_path, monkeypatch):
    """Point config at a temporary config.json; restore the real one afterwards."""
    path = tmp_path / "config.json"
    monkeypatch.setattr(config, "CONFIG_PATH", path)
    monkeypatch.setattr(config, "_LOCAL_CONFIG_PATH", tmp_path / "missing.json")

    def write(data: dict) -> None:
        path.write_text(json.dumps(data), encoding="utf-8")
        config.reload_config()

    yield write
    monkeypatch.undo()
    config.reload_config()


def test_dot_keys_and_limit_overrides(user_config) -> None:
    user_config({
        "model": "qwen2.5-coder",
        "chat": {"max_retries": 2, "temperature": 0.4},
        "limits": {"facts.max_bytes": 512},
    })

    assert config.MODEL == "qwen2.5-coder"
    assert config.get("chat.max_retries") == 2
    assert config.get("chat.missing", "fallback") == "fallback"
    assert get_limit("facts.max_bytes") == 512
    assert get_limit("terminal.overflow_bytes") == DEFAULTS["terminal.overflow_bytes"]

    chat = ChatConfig.from_config()
    assert chat.max_retries == 2
    assert chat.temperature == 0.4


def test_data_dir_env_override(user_config, tmp_path, monkeypatch) -> None:
    user_config({"data_dir": str(tmp_path / "from-config")})
    assert config.get_data_dir() == (tmp_path / "from-config").resolve()

    monkeypatch.setenv("ANALYST_DIR", str(tmp_path / "from-env"))
    config._reset_data_dir()
    assert config.get_data_dir() == (tmp_path / "from-env").resolve()


def test_api_key_resolution(monkeypatch) -> None:
    monkeypatch.setenv("API_KEY", "from-env")
    assert config.get_api_key() == "from-env"
    assert config.get_api_key("explicit") == "explicit"


def test_unknown_limit_is_an_error() -> None:
    with pytest.raises(KeyError):
        get_limit("facts.max_byte")


def test_trunc_uses_named_limit() -> None:
    assert trunc("x" * 10) == "x" * 10
    assert trunc("x" * 400) == "x" * 297 + "..."
