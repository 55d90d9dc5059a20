"""Tests for gateway/devices.py - device pairing and token handling."""

import json

import pytest

from gateway.devices import DEFAULT_ROLE, DeviceStore, hash_token
from gateway.errors import PairingError


def _paired(store, device_id="laptop", roles=None):
    request = store.request(device_id, display_name="Laptop", platform="linux", roles=roles)
    return store.approve(request["requestId"])


class TestRequests:
    def test_request_defaults_to_operator(self, tmp_path):
        request = DeviceStore(tmp_path).request("laptop")
        assert request["roles"] == [DEFAULT_ROLE]

    def test_repeat_request_merges_roles(self, tmp_path):
        store = DeviceStore(tmp_path)
        first = store.request("laptop", roles=["operator"])
        second = store.request("laptop", roles=["node"], platform="mac")
        assert second["requestId"] == first["requestId"]
        assert second["roles"] == ["node", "operator"]
        assert len(store.list()["pending"]) == 1

    def test_request_needs_id(self, tmp_path):
        with pytest.raises(PairingError):
            DeviceStore(tmp_path).request("")

    def test_reject(self, tmp_path):
        store = DeviceStore(tmp_path)
        request = store.request("laptop")
        store.reject(request["requestId"])
        assert store.list() == {"pending": [], "paired": []}
        with pytest.raises(PairingError):
            store.reject(request["requestId"])


class TestTokens:
    def test_approve_issues_token_per_role(self, tmp_path):
        store = DeviceStore(tmp_path)
        result = _paired(store, roles=["operator", "node"])
        assert sorted(result["tokens"]) == ["node", "operator"]
        assert result["device"]["roles"] == ["node", "operator"]
        assert store.verify_token("laptop", "operator", result["tokens"]["operator"])
        assert not store.verify_token("laptop", "operator", result["tokens"]["node"])

    def test_only_hashes_on_disk(self, tmp_path):
        store = DeviceStore(tmp_path)
        token = _paired(store)["tokens"][DEFAULT_ROLE]
        raw = store.paired_path.read_text()
        assert token not in raw
        assert json.loads(raw)["laptop"]["tokens"][DEFAULT_ROLE]["hash"] == hash_token(token)

    def test_list_hides_hashes(self, tmp_path):
        store = DeviceStore(tmp_path)
        _paired(store)
        device = store.list()["paired"][0]
        assert "tokens" not in device
        assert device["roles"] == [DEFAULT_ROLE]

    def test_rotate_invalidates_old_token(self, tmp_path):
        store = DeviceStore(tmp_path)
        old = _paired(store)["tokens"][DEFAULT_ROLE]
        new = store.rotate("laptop", DEFAULT_ROLE)["token"]
        assert not store.verify_token("laptop", DEFAULT_ROLE, old)
        assert store.verify_token("laptop", DEFAULT_ROLE, new)

    def test_revoke_one_role(self, tmp_path):
        store = DeviceStore(tmp_path)
        tokens = _paired(store, roles=["operator", "node"])["tokens"]
        result = store.revoke("laptop", "node")
        assert result["remainingRoles"] == ["operator"]
        assert not store.verify_token("laptop", "node", tokens["node"])
        assert store.verify_token("laptop", "operator", tokens["operator"])

    def test_unknown_device_or_role(self, tmp_path):
        store = DeviceStore(tmp_path)
        _paired(store)
        with pytest.raises(PairingError):
            store.rotate("phone", DEFAULT_ROLE)
        with pytest.raises(PairingError):
            store.revoke("laptop", "admin")

    def test_verify_unknown_device(self, tmp_path):
        assert DeviceStore(tmp_path).verify_token("ghost", DEFAULT_ROLE, "x") is False


class TestClear:
    def test_requires_confirm(self, tmp_path):
        with pytest.raises(PairingError):
            DeviceStore(tmp_path).clear()

    def test_pending_only(self, tmp_path):
        store = DeviceStore(tmp_path)
        _paired(store)
        store.request("phone")
        assert store.clear(confirm=True, pending_only=True) == {"pending": 1, "paired": 0}
        assert len(store.list()["paired"]) == 1

    def test_everything(self, tmp_path):
        store = DeviceStore(tmp_path)
        _paired(store)
        assert store.clear(confirm=True) == {"pending": 0, "paired": 1}
        assert store.list() == {"pending": [], "paired": []}

    def test_remove(self, tmp_path):
        store = DeviceStore(tmp_path)
        _paired(store)
        assert store.remove("laptop")["deviceId"] == "laptop"
        with pytest.raises(PairingError):
            store.remove("laptop")
