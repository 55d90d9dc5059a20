"""
DM pairing.

Unknown senders on a channel with ``dmPolicy: pairing`` get a short code.
The owner approves it from the CLI (``oni pairing approve telegram CODE``),
which moves the sender into ``credentials/<channel>-allowFrom.json``.

Storage:
    <state>/credentials/<channel>-pairing.json    pending requests
    <state>/credentials/<channel>-allowFrom.json  approved sender ids
"""

import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from gateway.accounts import DEFAULT_ACCOUNT_ID, normalize_account_id, normalize_allow_entries
from gateway.config import atomic_write_json
from gateway.errors import PairingError
from gateway.platforms.base import maybe_await
from gateway.session import store_lock
from oni_constants import get_state_dir

logger = logging.getLogger(__name__)

# No 0/O, 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
REQUEST_TTL_MS = 60 * 60 * 1000
MAX_PENDING_PER_ACCOUNT = 3


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


@dataclass
class PairingRequest:
    id: str
    code: str
    channel_id: str
    account_id: str
    sender_id: str
    sender_name: Optional[str]
    created_at: int

    def expired(self, now_ms: int) -> bool:
        return now_ms - self.created_at > REQUEST_TTL_MS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "channel": self.channel_id,
            "accountId": self.account_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PairingRequest":
        return cls(
            id=data["id"],
            code=data["code"],
            channel_id=data.get("channel", ""),
            account_id=normalize_account_id(data.get("accountId")),
            sender_id=str(data["senderId"]),
            sender_name=data.get("senderName"),
            created_at=int(data.get("createdAt") or 0),
        )


class PairingStore:
    def __init__(self, state_dir: Optional[Path] = None):
        self.state_dir = Path(state_dir) if state_dir else get_state_dir()
        self.credentials_dir = self.state_dir / "credentials"

    def _pending_path(self, channel: str) -> Path:
        return self.credentials_dir / f"{channel}-pairing.json"

    def _allow_path(self, channel: str) -> Path:
        return self.credentials_dir / f"{channel}-allowFrom.json"

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable pairing file %s: %s", path, e)
            return default

    def _write_json(self, path: Path, data: Any) -> None:
        self.credentials_dir.mkdir(parents=True, exist_ok=True)
        with store_lock(path):
            atomic_write_json(path, data)

    def _load_requests(self, channel: str) -> List[PairingRequest]:
        data = self._read_json(self._pending_path(channel), {})
        entries = data.get("requests", []) if isinstance(data, dict) else []
        now = _now_ms()
        requests = []
        for entry in entries:
            try:
                request = PairingRequest.from_dict(entry)
            except (KeyError, TypeError, ValueError):
                continue
            if not request.expired(now):
                requests.append(request)
        return requests

    def _save_requests(self, channel: str, requests: List[PairingRequest]) -> None:
        self._write_json(self._pending_path(channel), {"requests": [r.to_dict() for r in requests]})

    def _channels_on_disk(self) -> List[str]:
        if not self.credentials_dir.is_dir():
            return []
        return sorted(p.name[: -len("-pairing.json")] for p in self.credentials_dir.glob("*-pairing.json"))

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def upsert_request(
        self,
        channel: str,
        sender_id: str,
        sender_name: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> Optional[Tuple[PairingRequest, bool]]:
        """
        Return ``(request, created)`` for a sender.

        A sender that already has a live request gets it back. Returns None
        when the account already has the maximum number of pending requests.
        """
        account_id = normalize_account_id(account_id)
        sender_id = str(sender_id)
        requests = self._load_requests(channel)
        for request in requests:
            if request.sender_id == sender_id and request.account_id == account_id:
                return request, False

        pending = [r for r in requests if r.account_id == account_id]
        if len(pending) >= MAX_PENDING_PER_ACCOUNT:
            logger.info("Pairing request cap reached for %s:%s", channel, account_id)
            return None

        existing_codes = {r.code for r in requests}
        code = generate_code()
        while code in existing_codes:
            code = generate_code()
        request = PairingRequest(
            id=uuid.uuid4().hex[:12],
            code=code,
            channel_id=channel,
            account_id=account_id,
            sender_id=sender_id,
            sender_name=sender_name,
            created_at=_now_ms(),
        )
        requests.append(request)
        self._save_requests(channel, requests)
        logger.info("New pairing request %s on %s:%s", request.id, channel, account_id)
        return request, True

    def list_requests(self, channel: Optional[str] = None) -> List[PairingRequest]:
        channels = [channel] if channel else self._channels_on_disk()
        result = []
        for ch in channels:
            result.extend(self._load_requests(ch))
        result.sort(key=lambda r: r.created_at)
        return result

    def _take(self, channel: str, code_or_id: str) -> PairingRequest:
        wanted = str(code_or_id).strip()
        requests = self._load_requests(channel)
        for index, request in enumerate(requests):
            if request.id == wanted or request.code == wanted.upper():
                del requests[index]
                self._save_requests(channel, requests)
                return request
        raise PairingError(f"No pending pairing request '{wanted}' on {channel}")

    def approve(self, channel: str, code_or_id: str) -> PairingRequest:
        request = self._take(channel, code_or_id)
        allowed = self.read_allow_from(channel)
        if request.sender_id not in allowed:
            allowed.append(request.sender_id)
            self._write_allow_from(channel, allowed)
        logger.info("Approved %s sender %s", channel, request.sender_id)
        return request

    def reject(self, channel: str, code_or_id: str) -> PairingRequest:
        request = self._take(channel, code_or_id)
        logger.info("Rejected %s pairing request %s", channel, request.id)
        return request

    def clear_pending(self, channel: Optional[str] = None, confirm: bool = False) -> int:
        if not confirm:
            raise PairingError("Refusing to clear pending pairing requests without confirm")
        cleared = 0
        for ch in [channel] if channel else self._channels_on_disk():
            cleared += len(self._load_requests(ch))
            self._save_requests(ch, [])
        return cleared

    # -------------------------------------------------------------------------
    # Approved senders
    # -------------------------------------------------------------------------

    def read_allow_from(self, channel: str) -> List[str]:
        data = self._read_json(self._allow_path(channel), {})
        entries = data.get("allowFrom", []) if isinstance(data, dict) else []
        return normalize_allow_entries(entries)

    def _write_allow_from(self, channel: str, entries: List[str]) -> None:
        self._write_json(self._allow_path(channel), {"allowFrom": entries})

    def revoke(self, channel: str, sender_id: str) -> bool:
        allowed = self.read_allow_from(channel)
        sender_id = str(sender_id).strip()
        if sender_id not in allowed:
            return False
        allowed.remove(sender_id)
        self._write_allow_from(channel, allowed)
        logger.info("Revoked %s sender %s", channel, sender_id)
        return True

    def is_approved(self, channel: str, sender_id: str) -> bool:
        return str(sender_id).strip() in self.read_allow_from(channel)

    def drop_account(self, channel: str, account_id: Optional[str], clear_allow_from: bool = False) -> Dict[str, int]:
        """
        Forget a deleted account: its pending requests always go.

        Approved senders are stored per channel, so they are only cleared when
        the caller says the channel has no accounts left.
        """
        account_id = normalize_account_id(account_id)
        requests = self._load_requests(channel)
        kept = [r for r in requests if r.account_id != account_id]
        if len(kept) != len(requests):
            self._save_requests(channel, kept)
        approved = 0
        if clear_allow_from:
            approved = len(self.read_allow_from(channel))
            if approved:
                self._write_allow_from(channel, [])
        return {"pending": len(requests) - len(kept), "approved": approved}


def is_sender_allowed(
    cfg: Dict[str, Any],
    registry: Any,
    store: Optional[PairingStore],
    channel: str,
    account_id: Optional[str],
    sender_id: str,
) -> bool:
    """
    Check config ``allowFrom`` (``*`` allows everyone) and then the
    approved-sender store. Entries go through the channel's
    ``normalize_allow_entry`` so ``@user`` and ``user`` compare equal.
    """
    plugin = registry.require(channel)
    normalize = plugin.pairing.normalize_allow_entry if plugin.pairing and plugin.pairing.normalize_allow_entry else None

    def norm(value: str) -> str:
        return normalize(value) if normalize else str(value).strip()

    candidate = norm(sender_id)
    account = plugin.config.resolve_account(cfg, account_id or DEFAULT_ACCOUNT_ID) if plugin.config else None
    configured = normalize_allow_entries(account.allow_from) if account else []
    if "*" in configured:
        return True
    if candidate in {norm(e) for e in configured}:
        return True
    if store is not None:
        return candidate in {norm(e) for e in store.read_allow_from(plugin.id)}
    return False


async def approve_and_notify(
    store: PairingStore,
    registry: Any,
    cfg: Dict[str, Any],
    channel: str,
    code_or_id: str,
) -> Dict[str, Any]:
    """Approve a request and tell the sender; a failed notice is reported, not raised."""
    plugin = registry.require(channel)
    request = store.approve(plugin.id, code_or_id)
    result: Dict[str, Any] = {"approved": request.to_dict(), "notified": False}
    if plugin.pairing and plugin.pairing.notify_approval:
        try:
            await maybe_await(plugin.pairing.notify_approval(cfg, request.sender_id))
            result["notified"] = True
        except Exception as e:
            logger.warning("Approval notice to %s:%s failed: %s", plugin.id, request.sender_id, e)
            result["notifyError"] = str(e)
    return result
