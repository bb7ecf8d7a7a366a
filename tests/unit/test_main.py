"""
tests/unit/test_main.py — Startup wiring and logging setup

Run with:
    pytest tests/unit/test_main.py -v
"""

from __future__ import annotations

import logging
import textwrap

import pytest

from julesbridge.agent.router import SessionRouter
from julesbridge.config.settings import Settings
from julesbridge.main import bootstrap, build_router, parse_args
from julesbridge.observability.logger import (
    bind_conversation,
    clear_context,
    get_logger,
    setup_logging,
)

from fakes import FakeJulesClient


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.config is None
        assert args.log_level is None
        assert args.no_health is False

    def test_flags(self):
        args = parse_args(["--config", "c.yaml", "--log-level", "DEBUG", "--no-health"])
        assert args.config == "c.yaml"
        assert args.log_level == "DEBUG"
        assert args.no_health is True


class TestBootstrap:
    def test_missing_secrets_exit_with_code_1(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("logging:\n  level: INFO\n")
        with pytest.raises(SystemExit) as exc_info:
            bootstrap(parse_args(["--config", str(cfg)]))
        assert exc_info.value.code == 1
        assert "JULES_API_KEY" in capsys.readouterr().err

    def test_invalid_value_exit_with_code_1(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("llm:\n  provider: nonsense\n")
        with pytest.raises(SystemExit) as exc_info:
            bootstrap(parse_args(["--config", str(cfg)]))
        assert exc_info.value.code == 1
        assert "Config validation failed" in capsys.readouterr().err

    def test_valid_config_sets_up_logging(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JULES_API_KEY", "k")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "t")
        monkeypatch.setenv("OPENAI_API_KEY", "o")
        cfg = tmp_path / "config.yaml"
        cfg.write_text(textwrap.dedent(f"""
            logging:
              level: WARNING
              log_dir: {tmp_path / 'logs'}
              console_output: false
        """))

        settings, log = bootstrap(parse_args(["--config", str(cfg), "--log-level", "DEBUG"]))

        assert settings.jules_api_key == "k"
        assert (tmp_path / "logs" / "julesbridge.log").exists()
        assert logging.getLogger().level == logging.DEBUG


def test_build_router_wires_translation_hooks():
    settings = Settings(
        OPENAI_API_KEY="sk-test",
        translation={"enabled": True},
    )
    router = build_router(settings, FakeJulesClient())
    assert isinstance(router, SessionRouter)
    assert router._to_agent is not None


def test_logging_writes_json_with_conversation_context(tmp_path):
    setup_logging(level="INFO", log_dir=tmp_path, console_output=False)
    bind_conversation(55, session_id="s-1")
    try:
        get_logger("julesbridge.test").info("test.event", extra_field=1)
    finally:
        clear_context()
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = (tmp_path / "julesbridge.log").read_text(encoding="utf-8")
    assert '"event": "test.event"' in content
    assert '"conversation_id": "55"' in content
    assert '"session_id": "s-1"' in content
