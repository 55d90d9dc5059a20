"""Tests for gateway/accounts.py - account lookup and immutable account edits."""

import copy

from gateway.accounts import (
    account_from_section,
    apply_account_patch,
    delete_account,
    find_account_collisions,
    list_account_ids,
    normalize_account_id,
    normalize_allow_entries,
    resolve_account_section,
    set_account_enabled,
)


def _cfg():
    return {
        "channels": {
            "telegram": {
                "botToken": "base-token",
                "dmPolicy": "allowlist",
                "allowFrom": ["123"],
                "accounts": {
                    "Work": {"botToken": "work-token", "allowFrom": ["456"]},
                },
            }
        }
    }


class TestLookup:
    def test_normalize_account_id(self):
        assert normalize_account_id(" Work ") == "work"
        assert normalize_account_id("") == "default"
        assert normalize_account_id(None) == "default"

    def test_list_account_ids_without_accounts(self):
        assert list_account_ids({}, "telegram") == ["default"]

    def test_list_account_ids_named(self):
        assert list_account_ids(_cfg(), "telegram") == ["work"]

    def test_named_account_inherits_channel_keys(self):
        section = resolve_account_section(_cfg(), "telegram", "WORK")
        assert section["botToken"] == "work-token"
        assert section["dmPolicy"] == "allowlist"
        assert section["allowFrom"] == ["456"]
        assert "accounts" not in section

    def test_account_from_section_defaults_bad_policies(self):
        account = account_from_section("telegram", "default", {"dmPolicy": "weird", "groupPolicy": "nope"})
        assert account.dm_policy == "pairing"
        assert account.group_policy == "allowlist"
        assert account.enabled is True

    def test_account_disabled(self):
        account = account_from_section("telegram", "default", {"enabled": False})
        assert account.enabled is False
        assert account.key == "telegram:default"


class TestMutations:
    def test_patch_returns_new_tree(self):
        cfg = _cfg()
        before = copy.deepcopy(cfg)
        updated = apply_account_patch(cfg, "telegram", "work", {"name": "Work bot"})
        assert cfg == before
        assert updated["channels"]["telegram"]["accounts"]["Work"]["name"] == "Work bot"

    def test_patch_none_removes_key(self):
        updated = apply_account_patch(_cfg(), "telegram", "work", {"allowFrom": None})
        assert "allowFrom" not in updated["channels"]["telegram"]["accounts"]["Work"]

    def test_patch_default_account_writes_channel_section(self):
        updated = apply_account_patch({}, "discord", None, {"token": "t"})
        assert updated == {"channels": {"discord": {"token": "t"}}}

    def test_patch_new_named_account(self):
        updated = apply_account_patch({}, "slack", "Team", {"botToken": "xoxb"})
        assert updated["channels"]["slack"]["accounts"]["team"] == {"botToken": "xoxb"}

    def test_set_enabled(self):
        updated = set_account_enabled(_cfg(), "telegram", "work", False)
        assert updated["channels"]["telegram"]["accounts"]["Work"]["enabled"] is False

    def test_delete_named_account(self):
        updated = delete_account(_cfg(), "telegram", "work")
        assert "accounts" not in updated["channels"]["telegram"]
        assert updated["channels"]["telegram"]["botToken"] == "base-token"

    def test_delete_default_without_named_drops_section(self):
        cfg = {"channels": {"discord": {"token": "t"}}}
        assert delete_account(cfg, "discord", "default") == {"channels": {}}

    def test_delete_default_keeps_named_accounts(self):
        updated = delete_account(_cfg(), "telegram", "default")
        assert updated["channels"]["telegram"] == {"accounts": {"Work": {"botToken": "work-token", "allowFrom": ["456"]}}}

    def test_delete_unknown_is_noop(self):
        cfg = _cfg()
        assert delete_account(cfg, "telegram", "ghost") == cfg


class TestHelpers:
    def test_collisions(self):
        cfg = {"channels": {"slack": {"accounts": {"Team": {}, "team": {}}}}}
        collisions = find_account_collisions(cfg)
        assert collisions == [{"channel": "slack", "accountId": "team", "keys": ["Team", "team"]}]

    def test_normalize_allow_entries(self):
        assert normalize_allow_entries([123, " 123 ", "", "abc", "abc"]) == ["123", "abc"]
