"""
Channel account store.

Accounts live inside the config tree:

    channels.<channel>                  -> the "default" account
    channels.<channel>.accounts.<id>    -> named accounts (inherit channel keys)

Every mutation here returns a new config tree; the input is never modified,
so concurrent readers never observe a half-written config.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from oni_constants import DEFAULT_ACCOUNT_ID

GROUP_POLICIES = ("open", "allowlist", "closed")
DM_POLICIES = ("pairing", "allowlist", "open", "disabled")

DEFAULT_GROUP_POLICY = "allowlist"
DEFAULT_DM_POLICY = "pairing"

# Keys that belong to the channel section itself and are never inherited by
# named accounts.
_CHANNEL_ONLY_KEYS = {"accounts"}

AllowEntry = Union[str, int]


@dataclass
class ChannelAccount:
    """One configured identity for a provider."""
    channel_id: str
    account_id: str = DEFAULT_ACCOUNT_ID
    enabled: bool = True
    credentials_ref: Optional[str] = None
    allow_from: List[AllowEntry] = field(default_factory=list)
    group_policy: str = DEFAULT_GROUP_POLICY
    default_to: Optional[str] = None
    name: Optional[str] = None
    dm_policy: str = DEFAULT_DM_POLICY
    group_allow_from: List[AllowEntry] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.channel_id}:{self.account_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channelId": self.channel_id,
            "accountId": self.account_id,
            "enabled": self.enabled,
            "credentialsRef": self.credentials_ref,
            "allowFrom": list(self.allow_from),
            "groupPolicy": self.group_policy,
            "defaultTo": self.default_to,
            "name": self.name,
            "dmPolicy": self.dm_policy,
            "groupAllowFrom": list(self.group_allow_from),
        }


def normalize_account_id(value: Optional[str]) -> str:
    text = (value or "").strip().lower() if isinstance(value, str) else ""
    return text or DEFAULT_ACCOUNT_ID


def _channels(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    channels = (cfg or {}).get("channels")
    return channels if isinstance(channels, dict) else {}


def get_channel_section(cfg: Optional[Dict[str, Any]], channel_id: str) -> Dict[str, Any]:
    section = _channels(cfg).get(channel_id)
    return section if isinstance(section, dict) else {}


def _accounts_map(section: Dict[str, Any]) -> Dict[str, Any]:
    accounts = section.get("accounts")
    return accounts if isinstance(accounts, dict) else {}


def _find_account_key(section: Dict[str, Any], account_id: str) -> Optional[str]:
    """Raw key in ``accounts`` matching ``account_id`` after normalization."""
    for raw_key in _accounts_map(section):
        if normalize_account_id(raw_key) == account_id:
            return raw_key
    return None


def list_account_ids(cfg: Optional[Dict[str, Any]], channel_id: str) -> List[str]:
    section = get_channel_section(cfg, channel_id)
    ids = sorted({normalize_account_id(k) for k in _accounts_map(section)})
    return ids or [DEFAULT_ACCOUNT_ID]


def resolve_account_section(
    cfg: Optional[Dict[str, Any]],
    channel_id: str,
    account_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Merged raw section for one account (channel keys overridden by the account's)."""
    account_id = normalize_account_id(account_id)
    section = get_channel_section(cfg, channel_id)
    merged = {k: copy.deepcopy(v) for k, v in section.items() if k not in _CHANNEL_ONLY_KEYS}
    raw_key = _find_account_key(section, account_id)
    if raw_key is not None and isinstance(section["accounts"][raw_key], dict):
        merged.update(copy.deepcopy(section["accounts"][raw_key]))
    return merged


def account_from_section(
    channel_id: str,
    account_id: str,
    section: Dict[str, Any],
    credentials_ref: Optional[str] = None,
) -> ChannelAccount:
    group_policy = section.get("groupPolicy")
    dm_policy = section.get("dmPolicy")
    default_to = section.get("defaultTo")
    return ChannelAccount(
        channel_id=channel_id,
        account_id=normalize_account_id(account_id),
        enabled=section.get("enabled", True) is not False,
        credentials_ref=credentials_ref,
        allow_from=list(section.get("allowFrom") or []),
        group_policy=group_policy if group_policy in GROUP_POLICIES else DEFAULT_GROUP_POLICY,
        default_to=str(default_to) if default_to not in (None, "") else None,
        name=section.get("name"),
        dm_policy=dm_policy if dm_policy in DM_POLICIES else DEFAULT_DM_POLICY,
        group_allow_from=list(section.get("groupAllowFrom") or []),
        config=section,
    )


def _with_channel_section(cfg: Optional[Dict[str, Any]], channel_id: str, section: Dict[str, Any]) -> Dict[str, Any]:
    next_cfg = copy.deepcopy(cfg or {})
    channels = next_cfg.get("channels")
    if not isinstance(channels, dict):
        channels = {}
    channels[channel_id] = section
    next_cfg["channels"] = channels
    return next_cfg


def apply_account_patch(
    cfg: Optional[Dict[str, Any]],
    channel_id: str,
    account_id: Optional[str],
    patch: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Return a new config tree with ``patch`` merged into one account.

    Keys whose value is None are removed from the target section.
    """
    account_id = normalize_account_id(account_id)
    section = copy.deepcopy(get_channel_section(cfg, channel_id))

    if account_id == DEFAULT_ACCOUNT_ID and _find_account_key(section, account_id) is None:
        target = section
    else:
        accounts = dict(_accounts_map(section))
        raw_key = _find_account_key(section, account_id) or account_id
        existing = accounts.get(raw_key)
        target = dict(existing) if isinstance(existing, dict) else {}
        accounts[raw_key] = target
        section["accounts"] = accounts

    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        else:
            target[key] = copy.deepcopy(value)

    return _with_channel_section(cfg, channel_id, section)


def set_account_enabled(
    cfg: Optional[Dict[str, Any]],
    channel_id: str,
    account_id: Optional[str],
    enabled: bool,
) -> Dict[str, Any]:
    return apply_account_patch(cfg, channel_id, account_id, {"enabled": bool(enabled)})


def delete_account(
    cfg: Optional[Dict[str, Any]],
    channel_id: str,
    account_id: Optional[str],
) -> Dict[str, Any]:
    """
    Remove one account from the tree.

    Deleting the default account of a channel without named accounts drops
    the whole channel section.
    """
    account_id = normalize_account_id(account_id)
    section = copy.deepcopy(get_channel_section(cfg, channel_id))
    if not section:
        return copy.deepcopy(cfg or {})

    raw_key = _find_account_key(section, account_id)
    if raw_key is not None:
        accounts = dict(_accounts_map(section))
        accounts.pop(raw_key, None)
        if accounts:
            section["accounts"] = accounts
        else:
            section.pop("accounts", None)
        return _with_channel_section(cfg, channel_id, section)

    if account_id != DEFAULT_ACCOUNT_ID:
        return copy.deepcopy(cfg or {})

    accounts = _accounts_map(section)
    next_cfg = copy.deepcopy(cfg or {})
    if accounts:
        next_cfg["channels"][channel_id] = {"accounts": copy.deepcopy(accounts)}
    else:
        next_cfg["channels"].pop(channel_id, None)
    return next_cfg


def find_account_collisions(cfg: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Account keys that collide after normalization within one channel."""
    collisions = []
    for channel_id, section in _channels(cfg).items():
        if not isinstance(section, dict):
            continue
        seen: Dict[str, str] = {}
        for raw_key in _accounts_map(section):
            normalized = normalize_account_id(raw_key)
            if normalized in seen:
                collisions.append({
                    "channel": channel_id,
                    "accountId": normalized,
                    "keys": [seen[normalized], raw_key],
                })
            else:
                seen[normalized] = raw_key
    return collisions


def normalize_allow_entries(entries: Optional[List[AllowEntry]]) -> List[str]:
    """Stringify, trim and dedupe allow-list entries, preserving order."""
    result: List[str] = []
    for entry in entries or []:
        text = str(entry).strip()
        if text and text not in result:
            result.append(text)
    return result
