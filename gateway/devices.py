"""
Device pairing for gateway clients (CLI, desktop, mobile).

A device asks for access with a set of roles; the owner approves the
request and receives one bearer token per role. Only the sha256 of each
token is stored, so a token is shown exactly once.

Storage:
    <state>/devices/pending.json   {requestId: request}
    <state>/devices/paired.json    {deviceId: device}
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from gateway.config import atomic_write_json
from gateway.errors import PairingError
from gateway.session import store_lock
from oni_constants import get_state_dir

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "operator"


def _now_ms() -> int:
    return int(time.time() * 1000)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _new_token() -> str:
    return secrets.token_urlsafe(32)


class DeviceStore:
    def __init__(self, state_dir: Optional[Path] = None):
        self.state_dir = Path(state_dir) if state_dir else get_state_dir()
        self.devices_dir = self.state_dir / "devices"
        self.pending_path = self.devices_dir / "pending.json"
        self.paired_path = self.devices_dir / "paired.json"

    def _read(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable device file %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, path: Path, data: Dict[str, Any]) -> None:
        self.devices_dir.mkdir(parents=True, exist_ok=True)
        with store_lock(path):
            atomic_write_json(path, data)

    @staticmethod
    def _public(device: Dict[str, Any]) -> Dict[str, Any]:
        """Device without token hashes."""
        result = {k: v for k, v in device.items() if k != "tokens"}
        result["roles"] = sorted((device.get("tokens") or {}).keys())
        return result

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def request(
        self,
        device_id: str,
        display_name: Optional[str] = None,
        platform: Optional[str] = None,
        roles: Optional[List[str]] = None,
        scopes: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create (or refresh) the pending request for ``device_id``."""
        if not device_id:
            raise PairingError("device id is required")
        pending = self._read(self.pending_path)
        for request_id, request in pending.items():
            if request.get("deviceId") == device_id:
                request.update({
                    "displayName": display_name or request.get("displayName"),
                    "platform": platform or request.get("platform"),
                    "roles": sorted(set(request.get("roles", [])) | set(roles or [])) or [DEFAULT_ROLE],
                    "scopes": sorted(set(request.get("scopes", [])) | set(scopes or [])),
                })
                self._write(self.pending_path, pending)
                return request

        request_id = uuid.uuid4().hex[:12]
        request = {
            "requestId": request_id,
            "deviceId": device_id,
            "displayName": display_name,
            "platform": platform,
            "roles": sorted(set(roles or [DEFAULT_ROLE])),
            "scopes": sorted(set(scopes or [])),
            "createdAt": _now_ms(),
        }
        pending[request_id] = request
        self._write(self.pending_path, pending)
        logger.info("Device pairing requested by %s (%s)", device_id, request_id)
        return request

    def _pop_request(self, request_id: str) -> Dict[str, Any]:
        pending = self._read(self.pending_path)
        request = pending.pop(request_id, None)
        if request is None:
            raise PairingError(f"Unknown device request: {request_id}")
        self._write(self.pending_path, pending)
        return request

    def approve(self, request_id: str) -> Dict[str, Any]:
        """
        Approve a pending request. Returns the device plus the plaintext
        tokens issued for each requested role; these are not stored.
        """
        request = self._pop_request(request_id)
        paired = self._read(self.paired_path)
        device_id = request["deviceId"]
        device = paired.get(device_id) or {
            "deviceId": device_id,
            "createdAt": _now_ms(),
            "tokens": {},
        }
        device["displayName"] = request.get("displayName") or device.get("displayName")
        device["platform"] = request.get("platform") or device.get("platform")
        device["approvedAt"] = _now_ms()

        issued = {}
        tokens = device.setdefault("tokens", {})
        for role in request.get("roles") or [DEFAULT_ROLE]:
            token = _new_token()
            tokens[role] = {
                "hash": hash_token(token),
                "scopes": request.get("scopes", []),
                "issuedAt": _now_ms(),
            }
            issued[role] = token
        paired[device_id] = device
        self._write(self.paired_path, paired)
        logger.info("Approved device %s with roles %s", device_id, ", ".join(sorted(issued)))
        return {"device": self._public(device), "tokens": issued}

    def reject(self, request_id: str) -> Dict[str, Any]:
        request = self._pop_request(request_id)
        logger.info("Rejected device request %s", request_id)
        return request

    # -------------------------------------------------------------------------
    # Paired devices
    # -------------------------------------------------------------------------

    def _require_device(self, paired: Dict[str, Any], device_id: str) -> Dict[str, Any]:
        device = paired.get(device_id)
        if device is None:
            raise PairingError(f"Unknown device: {device_id}")
        return device

    def rotate(self, device_id: str, role: str, scopes: Optional[List[str]] = None) -> Dict[str, Any]:
        """Issue a new token for ``role``; the previous one stops verifying."""
        paired = self._read(self.paired_path)
        device = self._require_device(paired, device_id)
        tokens = device.setdefault("tokens", {})
        if role not in tokens:
            raise PairingError(f"Device {device_id} has no role '{role}'")
        token = _new_token()
        tokens[role] = {
            "hash": hash_token(token),
            "scopes": scopes if scopes is not None else tokens[role].get("scopes", []),
            "issuedAt": _now_ms(),
        }
        self._write(self.paired_path, paired)
        logger.info("Rotated %s token for device %s", role, device_id)
        return {"deviceId": device_id, "role": role, "token": token}

    def revoke(self, device_id: str, role: str) -> Dict[str, Any]:
        """Drop one role's token; other roles keep working."""
        paired = self._read(self.paired_path)
        device = self._require_device(paired, device_id)
        tokens = device.get("tokens") or {}
        if tokens.pop(role, None) is None:
            raise PairingError(f"Device {device_id} has no role '{role}'")
        self._write(self.paired_path, paired)
        logger.info("Revoked %s token for device %s", role, device_id)
        return {"deviceId": device_id, "role": role, "remainingRoles": sorted(tokens)}

    def remove(self, device_id: str) -> Dict[str, Any]:
        paired = self._read(self.paired_path)
        device = self._require_device(paired, device_id)
        del paired[device_id]
        self._write(self.paired_path, paired)
        return self._public(device)

    def clear(self, confirm: bool = False, pending_only: bool = False) -> Dict[str, int]:
        if not confirm:
            raise PairingError("Refusing to clear devices without confirm")
        pending = self._read(self.pending_path)
        result = {"pending": len(pending), "paired": 0}
        self._write(self.pending_path, {})
        if not pending_only:
            paired = self._read(self.paired_path)
            result["paired"] = len(paired)
            self._write(self.paired_path, {})
        return result

    def verify_token(self, device_id: str, role: str, token: str) -> bool:
        device = self._read(self.paired_path).get(device_id)
        if not device or not token:
            return False
        entry = (device.get("tokens") or {}).get(role)
        if not entry:
            return False
        return hmac.compare_digest(entry.get("hash", ""), hash_token(token))

    def list(self) -> Dict[str, Any]:
        pending = sorted(self._read(self.pending_path).values(), key=lambda r: r.get("createdAt", 0))
        paired = [self._public(d) for d in self._read(self.paired_path).values()]
        paired.sort(key=lambda d: d.get("createdAt", 0))
        return {"pending": pending, "paired": paired}
