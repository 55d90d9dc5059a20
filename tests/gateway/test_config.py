"""Tests for gateway/config.py - loading, validation, env overrides and path edits."""

import json

import pytest

from gateway.config import (
    apply_env_overrides,
    config_hash,
    get_gateway_port,
    get_gateway_token,
    get_value_at_path,
    load_config,
    parse_config_path,
    parse_duration_ms,
    read_config_file,
    save_config,
    set_value_at_path,
    unset_value_at_path,
    validate_config,
)
from gateway.errors import ConfigError


class TestDurations:
    @pytest.mark.parametrize("value,expected", [
        ("30d", 30 * 86400000),
        ("12h", 12 * 3600000),
        ("45m", 45 * 60000),
        ("1w", 7 * 86400000),
        ("500ms", 500),
        (2, 2 * 86400000),
        ("7", 7 * 86400000),
    ])
    def test_parse(self, value, expected):
        assert parse_duration_ms(value) == expected

    @pytest.mark.parametrize("value", ["soon", "", True, "3y"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration_ms(value)


class TestPaths:
    def test_parse_path(self):
        assert parse_config_path("agents.list[0].model.fallbacks") == ["agents", "list", 0, "model", "fallbacks"]

    def test_parse_empty_path(self):
        with pytest.raises(ConfigError):
            parse_config_path("  ")

    def test_get(self):
        cfg = {"agents": {"list": [{"id": "a", "model": {"fallbacks": []}}]}}
        assert get_value_at_path(cfg, "agents.list[0].model.fallbacks") == []
        assert get_value_at_path(cfg, "agents.list[3].id") is None
        assert get_value_at_path(cfg, "agents.missing", "x") == "x"

    def test_set_creates_intermediates_without_mutating(self):
        cfg = {}
        updated = set_value_at_path(cfg, "agents.list[0].id", "ops")
        assert cfg == {}
        assert updated == {"agents": {"list": [{"id": "ops"}]}}

    def test_set_index_out_of_range(self):
        with pytest.raises(ConfigError):
            set_value_at_path({"a": []}, "a[2]", 1)

    def test_unset(self):
        cfg = {"gateway": {"port": 1, "bind": "x"}}
        updated, removed = unset_value_at_path(cfg, "gateway.port")
        assert removed is True
        assert updated == {"gateway": {"bind": "x"}}
        assert cfg["gateway"]["port"] == 1

    def test_unset_missing(self):
        updated, removed = unset_value_at_path({"a": 1}, "b.c")
        assert removed is False
        assert updated == {"a": 1}


class TestValidation:
    def test_valid_config(self):
        cfg = {
            "channels": {"telegram": {"dmPolicy": "pairing", "allowFrom": [123, "abc"]}},
            "agents": {"defaults": {"model": "openai/gpt-4o"}, "list": [{"id": "main"}]},
            "bindings": [{"agentId": "main", "match": {"channel": "telegram"}}],
            "session": {"dmScope": "per-peer", "maintenance": {"mode": "enforce", "pruneAfter": "7d", "maxEntries": 10}},
            "gateway": {"port": 18789},
        }
        assert validate_config(cfg) == []

    def test_collects_every_issue(self):
        cfg = {
            "channels": {"telegram": {"dmPolicy": "maybe", "enabled": "yes"}},
            "agents": {"list": [{"id": "a"}, {"id": "A"}, {"model": 5}]},
            "bindings": [{"agentId": "ghost"}],
            "session": {"maintenance": {"mode": "loud", "maxEntries": 0}},
            "gateway": {"port": 70000},
        }
        paths = {issue.path for issue in validate_config(cfg)}
        assert {
            "channels.telegram.dmPolicy",
            "channels.telegram.enabled",
            "agents.list[1].id",
            "agents.list[2].id",
            "agents.list[2].model",
            "bindings[0].agentId",
            "session.maintenance.mode",
            "session.maintenance.maxEntries",
            "gateway.port",
        } <= paths

    def test_fallbacks_must_be_strings(self):
        cfg = {"agents": {"defaults": {"model": {"fallbacks": "a/b"}}}}
        assert [i.path for i in validate_config(cfg)] == ["agents.defaults.model.fallbacks"]

    def test_root_must_be_object(self):
        assert validate_config([])[0].message == "config root must be an object"


class TestFileIO:
    def test_missing_file_is_empty(self, tmp_path):
        assert read_config_file(tmp_path / "nope.json") == {}

    def test_json_with_comments(self, tmp_path):
        path = tmp_path / "oni.json"
        path.write_text('# gateway config\n{"gateway": {"port": 19000}}\n')
        assert read_config_file(path) == {"gateway": {"port": 19000}}

    def test_unparseable_raises(self, tmp_path):
        path = tmp_path / "oni.json"
        path.write_text('{"gateway": ')
        with pytest.raises(ConfigError):
            read_config_file(path)

    def test_load_invalid_lists_issues(self, tmp_path):
        path = tmp_path / "oni.json"
        path.write_text(json.dumps({"gateway": {"port": "x"}, "session": {"dmScope": "everyone"}}))
        with pytest.raises(ConfigError) as exc:
            load_config(path, apply_env=False)
        assert {i.path for i in exc.value.issues} == {"gateway.port", "session.dmScope"}

    def test_empty_fallbacks_survive_round_trip(self, tmp_path):
        path = tmp_path / "oni.json"
        cfg = {"agents": {"list": [{"id": "a", "model": {"primary": "x/y", "fallbacks": []}}]}}
        save_config(cfg, path)
        loaded = load_config(path, apply_env=False)
        assert loaded["agents"]["list"][0]["model"]["fallbacks"] == []
        assert not list(tmp_path.glob("*.tmp"))

    def test_save_refuses_invalid(self, tmp_path):
        path = tmp_path / "oni.json"
        with pytest.raises(ConfigError):
            save_config({"gateway": {"port": -1}}, path)
        assert not path.exists()


class TestEnvOverrides:
    def test_env_fills_unset_only(self):
        cfg = {"gateway": {"port": 1234}}
        updated = apply_env_overrides(cfg, {"ONI_GATEWAY_PORT": "9999", "ONI_GATEWAY_TOKEN": "secret"})
        assert updated["gateway"]["port"] == 1234
        assert updated["gateway"]["auth"]["token"] == "secret"
        assert "auth" not in cfg["gateway"]

    def test_channel_tokens_not_copied(self):
        updated = apply_env_overrides({}, {"TELEGRAM_BOT_TOKEN": "t"})
        assert "channels" not in updated

    def test_bad_port_ignored(self):
        assert apply_env_overrides({}, {"ONI_GATEWAY_PORT": "abc"}) == {"gateway": {}}

    def test_gateway_helpers(self):
        assert get_gateway_port({}) == 18789
        assert get_gateway_port({"gateway": {"port": 19000}}) == 19000
        assert get_gateway_token({"gateway": {"auth": {"token": "  t  "}}}) == "t"
        assert get_gateway_token({}) is None

    def test_config_hash_is_order_independent(self):
        assert config_hash({"a": 1, "b": 2}) == config_hash({"b": 2, "a": 1})
        assert config_hash({"a": 1}) != config_hash({"a": 2})
