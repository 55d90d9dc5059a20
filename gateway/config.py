"""
Gateway configuration management.

Handles:
- Locating and reading the config file (~/.oni/oni.json by default)
- Environment overrides (.env files + process env)
- Validation with path-located issues
- Immutable edits addressed by dotted/bracket paths
  (e.g. ``agents.list[0].model.fallbacks``)

The config is a plain nested dict. Readers get a tree that is replaced,
never edited, so there is no lock around it.
"""

import copy
import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from oni_constants import (
    DEFAULT_GATEWAY_PORT,
    get_config_path,
    get_state_dir,
)
from gateway.accounts import (
    DM_POLICIES,
    GROUP_POLICIES,
    find_account_collisions,
)
from gateway.errors import ConfigError, ConfigIssue

logger = logging.getLogger(__name__)

PathPart = Union[str, int]

DM_SCOPES = ("main", "per-peer", "per-channel-peer")
MAINTENANCE_MODES = ("warn", "enforce")

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)?\s*$", re.IGNORECASE)
_DURATION_UNITS_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}


def parse_duration_ms(value: Any, default_unit: str = "d") -> int:
    """
    Parse a duration into milliseconds.

    Examples:
        "30d" -> 2592000000
        "12h" -> 43200000
        90    -> 90 days (bare numbers use ``default_unit``)
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return int(value * _DURATION_UNITS_MS[default_unit])
    match = _DURATION_RE.match(str(value or ""))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}. Use a format like '30d', '12h' or '45m'")
    amount = float(match.group(1))
    unit = (match.group(2) or default_unit).lower()
    return int(amount * _DURATION_UNITS_MS[unit])


# =============================================================================
# Environment
# =============================================================================

def load_env_files() -> None:
    """Load ~/.oni/.env first, then a project .env as fallback."""
    env_path = get_state_dir() / ".env"
    if env_path.exists():
        try:
            load_dotenv(env_path, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(env_path, encoding="latin-1")
    load_dotenv(override=False)


def apply_env_overrides(cfg: Dict[str, Any], env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Return a copy of ``cfg`` with gateway env settings filled into unset keys.

    Channel credentials (TELEGRAM_BOT_TOKEN and friends) are not copied into
    the tree; each channel plugin reads its env var when the account leaves
    the credential unset, so saving a loaded config never writes them out.
    """
    env = os.environ if env is None else env
    next_cfg = copy.deepcopy(cfg)

    token = (env.get("ONI_GATEWAY_TOKEN") or "").strip()
    if token:
        auth = next_cfg.setdefault("gateway", {}).setdefault("auth", {})
        if isinstance(auth, dict) and not auth.get("token"):
            auth["token"] = token

    port = (env.get("ONI_GATEWAY_PORT") or "").strip()
    if port:
        gateway = next_cfg.setdefault("gateway", {})
        if isinstance(gateway, dict) and "port" not in gateway:
            try:
                gateway["port"] = int(port)
            except ValueError:
                logger.warning("Ignoring invalid ONI_GATEWAY_PORT=%s", port)

    return next_cfg


# =============================================================================
# Config paths (dotted / bracket syntax)
# =============================================================================

_PATH_TOKEN_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def parse_config_path(path: str) -> List[PathPart]:
    """
    Split ``agents.list[0].model.fallbacks`` into
    ``["agents", "list", 0, "model", "fallbacks"]``.
    """
    text = (path or "").strip()
    if not text:
        raise ConfigError("Config path is empty")
    parts: List[PathPart] = []
    pos = 0
    while pos < len(text):
        if text[pos] == ".":
            pos += 1
            continue
        match = _PATH_TOKEN_RE.match(text, pos)
        if not match:
            raise ConfigError(f"Invalid config path: {path!r}")
        if match.group(2) is not None:
            parts.append(int(match.group(2)))
        else:
            parts.append(match.group(1).strip())
        pos = match.end()
    if not parts:
        raise ConfigError(f"Invalid config path: {path!r}")
    return parts


def format_config_path(parts: List[PathPart]) -> str:
    out = ""
    for part in parts:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else part
    return out


_MISSING = object()


def get_value_at_path(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    node: Any = cfg
    for part in parse_config_path(path):
        if isinstance(part, int):
            if not isinstance(node, list) or part >= len(node):
                return default
            node = node[part]
        else:
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
    return copy.deepcopy(node)


def set_value_at_path(cfg: Dict[str, Any], path: str, value: Any) -> Dict[str, Any]:
    """Return a new tree with ``value`` stored at ``path`` (intermediates created)."""
    parts = parse_config_path(path)
    root = copy.deepcopy(cfg or {})
    node: Any = root
    for index, part in enumerate(parts[:-1]):
        next_part = parts[index + 1]
        container_type = list if isinstance(next_part, int) else dict
        if isinstance(part, int):
            if not isinstance(node, list):
                raise ConfigError(f"{format_config_path(parts[:index + 1])} is not a list")
            if part > len(node):
                raise ConfigError(f"Index {part} out of range at {format_config_path(parts[:index])}")
            if part == len(node):
                node.append(container_type())
            elif not isinstance(node[part], (dict, list)):
                node[part] = container_type()
            node = node[part]
        else:
            if not isinstance(node, dict):
                raise ConfigError(f"{format_config_path(parts[:index])} is not an object")
            if not isinstance(node.get(part), (dict, list)):
                node[part] = container_type()
            node = node[part]

    last = parts[-1]
    if isinstance(last, int):
        if not isinstance(node, list):
            raise ConfigError(f"{format_config_path(parts[:-1])} is not a list")
        if last > len(node):
            raise ConfigError(f"Index {last} out of range at {format_config_path(parts[:-1])}")
        if last == len(node):
            node.append(copy.deepcopy(value))
        else:
            node[last] = copy.deepcopy(value)
    else:
        if not isinstance(node, dict):
            raise ConfigError(f"{format_config_path(parts[:-1])} is not an object")
        node[last] = copy.deepcopy(value)
    return root


def unset_value_at_path(cfg: Dict[str, Any], path: str) -> Tuple[Dict[str, Any], bool]:
    """Return ``(new_tree, removed)``; missing paths leave the tree unchanged."""
    parts = parse_config_path(path)
    root = copy.deepcopy(cfg or {})
    node: Any = root
    for part in parts[:-1]:
        if isinstance(part, int):
            if not isinstance(node, list) or part >= len(node):
                return root, False
        elif not isinstance(node, dict) or part not in node:
            return root, False
        node = node[part]
    last = parts[-1]
    if isinstance(last, int):
        if isinstance(node, list) and last < len(node):
            node.pop(last)
            return root, True
        return root, False
    if isinstance(node, dict) and last in node:
        del node[last]
        return root, True
    return root, False


# =============================================================================
# Validation
# =============================================================================

def _check_model(value: Any, path: str, issues: List[ConfigIssue]) -> None:
    if value is None or isinstance(value, str):
        return
    if not isinstance(value, dict):
        issues.append(ConfigIssue(path, "must be a model id string or {primary, fallbacks}"))
        return
    primary = value.get("primary")
    if primary is not None and not isinstance(primary, str):
        issues.append(ConfigIssue(f"{path}.primary", "must be a string"))
    if "fallbacks" in value:
        fallbacks = value["fallbacks"]
        if not isinstance(fallbacks, list) or not all(isinstance(m, str) for m in fallbacks):
            issues.append(ConfigIssue(f"{path}.fallbacks", "must be a list of model ids"))


def _check_account_section(section: Any, path: str, issues: List[ConfigIssue]) -> None:
    if not isinstance(section, dict):
        issues.append(ConfigIssue(path, "must be an object"))
        return
    if "enabled" in section and not isinstance(section["enabled"], bool):
        issues.append(ConfigIssue(f"{path}.enabled", "must be true or false"))
    for key in ("allowFrom", "groupAllowFrom"):
        if key in section:
            entries = section[key]
            if not isinstance(entries, list) or not all(
                isinstance(e, (str, int)) and not isinstance(e, bool) for e in entries
            ):
                issues.append(ConfigIssue(f"{path}.{key}", "must be a list of strings or numbers"))
    if "groupPolicy" in section and section["groupPolicy"] not in GROUP_POLICIES:
        issues.append(ConfigIssue(f"{path}.groupPolicy", f"must be one of {', '.join(GROUP_POLICIES)}"))
    if "dmPolicy" in section and section["dmPolicy"] not in DM_POLICIES:
        issues.append(ConfigIssue(f"{path}.dmPolicy", f"must be one of {', '.join(DM_POLICIES)}"))
    if "defaultTo" in section and not isinstance(section["defaultTo"], (str, int)):
        issues.append(ConfigIssue(f"{path}.defaultTo", "must be a string"))


def validate_config(cfg: Any) -> List[ConfigIssue]:
    """Return every shape problem in ``cfg`` (empty list when valid)."""
    from agent.scope import normalize_agent_id

    issues: List[ConfigIssue] = []
    if not isinstance(cfg, dict):
        return [ConfigIssue("", "config root must be an object")]

    channels = cfg.get("channels")
    if channels is not None:
        if not isinstance(channels, dict):
            issues.append(ConfigIssue("channels", "must be an object"))
        else:
            for channel_id, section in channels.items():
                _check_account_section(section, f"channels.{channel_id}", issues)
                if isinstance(section, dict) and "accounts" in section:
                    accounts = section["accounts"]
                    if not isinstance(accounts, dict):
                        issues.append(ConfigIssue(f"channels.{channel_id}.accounts", "must be an object"))
                        continue
                    for account_id, account in accounts.items():
                        _check_account_section(account, f"channels.{channel_id}.accounts.{account_id}", issues)
            for collision in find_account_collisions(cfg):
                issues.append(ConfigIssue(
                    f"channels.{collision['channel']}.accounts",
                    f"account ids {collision['keys']} collide as '{collision['accountId']}'",
                ))

    agents = cfg.get("agents")
    agent_ids: List[str] = []
    if agents is not None:
        if not isinstance(agents, dict):
            issues.append(ConfigIssue("agents", "must be an object"))
        else:
            defaults = agents.get("defaults")
            if defaults is not None and not isinstance(defaults, dict):
                issues.append(ConfigIssue("agents.defaults", "must be an object"))
            elif isinstance(defaults, dict):
                _check_model(defaults.get("model"), "agents.defaults.model", issues)
            entries = agents.get("list")
            if entries is not None and not isinstance(entries, list):
                issues.append(ConfigIssue("agents.list", "must be a list"))
            elif isinstance(entries, list):
                for index, entry in enumerate(entries):
                    path = f"agents.list[{index}]"
                    if not isinstance(entry, dict):
                        issues.append(ConfigIssue(path, "must be an object"))
                        continue
                    raw_id = entry.get("id")
                    if not isinstance(raw_id, str) or not raw_id.strip():
                        issues.append(ConfigIssue(f"{path}.id", "is required"))
                    else:
                        agent_id = normalize_agent_id(raw_id)
                        if agent_id in agent_ids:
                            issues.append(ConfigIssue(f"{path}.id", f"duplicate agent id '{agent_id}'"))
                        agent_ids.append(agent_id)
                    _check_model(entry.get("model"), f"{path}.model", issues)

    bindings = cfg.get("bindings")
    if bindings is not None:
        if not isinstance(bindings, list):
            issues.append(ConfigIssue("bindings", "must be a list"))
        else:
            for index, binding in enumerate(bindings):
                path = f"bindings[{index}]"
                if not isinstance(binding, dict) or not isinstance(binding.get("agentId"), str):
                    issues.append(ConfigIssue(path, "must be an object with agentId"))
                    continue
                if agent_ids and normalize_agent_id(binding["agentId"]) not in agent_ids:
                    issues.append(ConfigIssue(f"{path}.agentId", f"unknown agent '{binding['agentId']}'"))

    session = cfg.get("session")
    if session is not None:
        if not isinstance(session, dict):
            issues.append(ConfigIssue("session", "must be an object"))
        else:
            if "dmScope" in session and session["dmScope"] not in DM_SCOPES:
                issues.append(ConfigIssue("session.dmScope", f"must be one of {', '.join(DM_SCOPES)}"))
            maintenance = session.get("maintenance")
            if maintenance is not None:
                if not isinstance(maintenance, dict):
                    issues.append(ConfigIssue("session.maintenance", "must be an object"))
                else:
                    if "mode" in maintenance and maintenance["mode"] not in MAINTENANCE_MODES:
                        issues.append(ConfigIssue("session.maintenance.mode", "must be 'warn' or 'enforce'"))
                    if "pruneAfter" in maintenance:
                        try:
                            parse_duration_ms(maintenance["pruneAfter"])
                        except ValueError as e:
                            issues.append(ConfigIssue("session.maintenance.pruneAfter", str(e)))
                    if "maxEntries" in maintenance:
                        value = maintenance["maxEntries"]
                        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                            issues.append(ConfigIssue("session.maintenance.maxEntries", "must be a positive integer"))

    gateway = cfg.get("gateway")
    if gateway is not None:
        if not isinstance(gateway, dict):
            issues.append(ConfigIssue("gateway", "must be an object"))
        elif "port" in gateway:
            port = gateway["port"]
            if isinstance(port, bool) or not isinstance(port, int) or not (1 <= port <= 65535):
                issues.append(ConfigIssue("gateway.port", "must be an integer between 1 and 65535"))

    return issues


# =============================================================================
# File IO
# =============================================================================

def read_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Parse the config file without validating it.

    The file is read with PyYAML, which accepts strict JSON plus ``#``
    comments. A missing file is an empty config.
    """
    path = Path(path) if path else get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain an object", [ConfigIssue("", "config root must be an object")])
    return data


def load_config(path: Optional[Path] = None, apply_env: bool = True) -> Dict[str, Any]:
    """
    Load and validate the config.

    Raises ConfigError when the file is malformed -- the only error that is
    fatal at startup.
    """
    path = Path(path) if path else get_config_path()
    cfg = read_config_file(path)
    issues = validate_config(cfg)
    if issues:
        raise ConfigError(f"Config invalid: {path}", issues)
    if apply_env:
        cfg = apply_env_overrides(cfg)
    return cfg


def save_config(cfg: Dict[str, Any], path: Optional[Path] = None) -> Path:
    """Validate and write the config atomically (temp file + rename)."""
    issues = validate_config(cfg)
    if issues:
        raise ConfigError("Refusing to save invalid config", issues)
    path = Path(path) if path else get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_json(path, cfg)
    return path


def atomic_write_json(path: Path, data: Any) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def config_hash(cfg: Dict[str, Any]) -> str:
    """Stable digest of a config tree, returned by ``config.get``."""
    raw = json.dumps(cfg, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_gateway_port(cfg: Dict[str, Any]) -> int:
    gateway = cfg.get("gateway") if isinstance(cfg.get("gateway"), dict) else {}
    port = gateway.get("port")
    return port if isinstance(port, int) and not isinstance(port, bool) else DEFAULT_GATEWAY_PORT


def get_gateway_token(cfg: Dict[str, Any]) -> Optional[str]:
    gateway = cfg.get("gateway") if isinstance(cfg.get("gateway"), dict) else {}
    auth = gateway.get("auth") if isinstance(gateway.get("auth"), dict) else {}
    token = auth.get("token")
    return token.strip() if isinstance(token, str) and token.strip() else None
