"""Tests for configuration loading and startup validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from wabot.config import BotConfig, _camel_to_snake, load_config, validate_startup


class TestDefaults:
    def test_defaults(self) -> None:
        cfg = BotConfig()
        assert cfg.prefix == "."
        assert cfg.mode == "public"
        assert cfg.port == 3000
        assert cfg.max_retries == 8
        assert cfg.crash_threshold == 3
        assert cfg.task_failure_threshold == 5
        assert cfg.rate_limit.requests == 100
        assert cfg.rate_limit.window_seconds == 900.0
        assert not any(cfg.features().values())

    def test_layout_paths(self, tmp_path: Path) -> None:
        cfg = BotConfig(root_dir=str(tmp_path))
        assert cfg.session_path == tmp_path / "sessions"
        assert cfg.plugins_path == tmp_path / "plugins"
        cfg = BotConfig(root_dir=str(tmp_path), plugins_dir=str(tmp_path / "custom"))
        assert cfg.plugins_path == tmp_path / "custom"

    def test_owner_and_admin_jids(self) -> None:
        cfg = BotConfig(owner_id="+234 800 000 0001", admin_numbers="2348000000002, 2348000000003:7@s.whatsapp.net")
        assert cfg.owner_jid == "2348000000001@s.whatsapp.net"
        assert cfg.admin_jids == [
            "2348000000002@s.whatsapp.net",
            "2348000000003@s.whatsapp.net",
        ]

    def test_no_owner_means_empty_jid(self) -> None:
        assert BotConfig().owner_jid == ""


class TestLoadConfig:
    def test_camel_case_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "ownerId": "2348000000001",
            "autoRead": True,
            "rateLimit": {"requests": 5, "windowSeconds": 60},
            "healthConfig": {"ignored": True},
        }))
        cfg = load_config(str(path))
        assert cfg.owner_id == "2348000000001"
        assert cfg.auto_read is True
        assert cfg.rate_limit.requests == 5
        assert cfg.rate_limit.window_seconds == 60

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mode": "public", "prefix": "!"}))
        monkeypatch.setenv("MODE", "private")
        cfg = load_config(str(path))
        assert cfg.mode == "private"
        assert cfg.prefix == "!"

    def test_nested_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SENDER_RATE_LIMIT__REQUESTS", "3")
        assert load_config().sender_rate_limit.requests == 3

    def test_missing_or_broken_file_uses_defaults(self, tmp_path: Path) -> None:
        assert load_config(str(tmp_path / "absent.json")).prefix == "."
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")
        assert load_config(str(broken)).prefix == "."

    def test_camel_to_snake(self) -> None:
        assert _camel_to_snake("autoStatusSeen") == "auto_status_seen"
        assert _camel_to_snake("ownerID") == "owner_id"
        assert _camel_to_snake("already_snake") == "already_snake"


class TestValidateStartup:
    def test_valid(self, config: BotConfig) -> None:
        validate_startup(config, require_gateway_factory=False)

    def test_all_errors_reported(self) -> None:
        cfg = BotConfig(mode="secret", timezone="Mars/Olympus", store_uri="mongodb://x", prefix="")
        with pytest.raises(ValueError) as exc_info:
            validate_startup(cfg)
        text = str(exc_info.value)
        assert "OWNER_ID" in text
        assert "MODE" in text
        assert "TIMEZONE" in text
        assert "GATEWAY_FACTORY" in text
        assert "STORE_URI" in text
        assert "PREFIX" in text

    def test_gateway_factory_format(self, config: BotConfig) -> None:
        config.gateway_factory = "mybridge.client"
        with pytest.raises(ValueError, match="GATEWAY_FACTORY"):
            validate_startup(config)
        config.gateway_factory = "mybridge.client:create"
        validate_startup(config)

    def test_thresholds_positive(self, config: BotConfig) -> None:
        config.crash_threshold = 0
        with pytest.raises(ValueError, match="crash_threshold"):
            validate_startup(config, require_gateway_factory=False)
