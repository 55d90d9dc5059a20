"""
Agent scope resolution.

Resolves a read-only view of one agent from the config tree and decides
which model (and fallback chain) serves the next turn. Everything here is
pure: no I/O, no mutation of the config passed in.

Precedence for the model chain:
  1. explicit primary on the agent entry (``model: "x"`` or ``model.primary``)
  2. ``agents.defaults.model`` (string or object form)
Fallbacks are tri-state on the agent entry:
  - key absent        -> inherit ``agents.defaults.model.fallbacks``
  - ``fallbacks: []`` -> inherited fallbacks are disabled for this agent
  - non-empty list    -> used as-is
"""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from oni_constants import DEFAULT_AGENT_ID, get_oni_home, get_state_dir


@dataclass(frozen=True)
class AgentConfig:
    """Derived snapshot of one agent's config entry."""
    name: Optional[str] = None
    workspace: Optional[str] = None
    agent_dir: Optional[str] = None
    model: Any = None
    identity: Optional[Dict[str, Any]] = None
    group_chat: Optional[Dict[str, Any]] = None
    subagents: Optional[Dict[str, Any]] = None
    sandbox: Optional[Dict[str, Any]] = None
    tools: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "workspace": self.workspace,
            "agentDir": self.agent_dir,
            "model": self.model,
            "identity": self.identity,
            "groupChat": self.group_chat,
            "subagents": self.subagents,
            "sandbox": self.sandbox,
            "tools": self.tools,
        }


@dataclass(frozen=True)
class ModelChain:
    """Effective model sequence for one agent/session at one point in time."""
    primary: Optional[str]
    fallbacks: List[str] = field(default_factory=list)

    def models(self) -> List[str]:
        """Primary followed by fallbacks, without duplicates."""
        ordered: List[str] = []
        for model in [self.primary, *self.fallbacks]:
            if model and model not in ordered:
                ordered.append(model)
        return ordered

    def to_dict(self) -> Dict[str, Any]:
        return {"primary": self.primary, "fallbacks": list(self.fallbacks)}


def normalize_agent_id(value: Optional[str]) -> str:
    """Trim and lower-case an agent id; empty values map to the default id."""
    text = (value or "").strip().lower()
    return text or DEFAULT_AGENT_ID


def _agent_entries(cfg: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    agents = (cfg or {}).get("agents")
    if not isinstance(agents, dict):
        return []
    entries = agents.get("list")
    if not isinstance(entries, list):
        return []
    return [e for e in entries if isinstance(e, dict)]


def _agent_defaults(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    agents = (cfg or {}).get("agents")
    if isinstance(agents, dict) and isinstance(agents.get("defaults"), dict):
        return agents["defaults"]
    return {}


def list_agent_ids(cfg: Optional[Dict[str, Any]]) -> List[str]:
    """Configured agent ids in config order (the default agent when none)."""
    ids: List[str] = []
    for entry in _agent_entries(cfg):
        agent_id = normalize_agent_id(entry.get("id"))
        if agent_id not in ids:
            ids.append(agent_id)
    return ids or [DEFAULT_AGENT_ID]


def resolve_default_agent_id(cfg: Optional[Dict[str, Any]]) -> str:
    entries = _agent_entries(cfg)
    for entry in entries:
        if entry.get("default") is True:
            return normalize_agent_id(entry.get("id"))
    if entries:
        return normalize_agent_id(entries[0].get("id"))
    return DEFAULT_AGENT_ID


def _find_agent_entry(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Optional[Dict[str, Any]]:
    wanted = normalize_agent_id(agent_id)
    for entry in _agent_entries(cfg):
        if normalize_agent_id(entry.get("id")) == wanted:
            return entry
    return None


def agent_exists(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> bool:
    return normalize_agent_id(agent_id) in list_agent_ids(cfg)


def resolve_agent_config(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Optional[AgentConfig]:
    """Return a derived snapshot for ``agent_id`` or None when it is not configured."""
    entry = _find_agent_entry(cfg, agent_id)
    if entry is None:
        return None
    entry = copy.deepcopy(entry)
    return AgentConfig(
        name=entry.get("name"),
        workspace=entry.get("workspace"),
        agent_dir=entry.get("agentDir"),
        model=entry.get("model"),
        identity=entry.get("identity"),
        group_chat=entry.get("groupChat"),
        subagents=entry.get("subagents"),
        sandbox=entry.get("sandbox"),
        tools=entry.get("tools"),
    )


def resolve_agent_workspace_dir(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Path:
    agent_id = normalize_agent_id(agent_id)
    entry = _find_agent_entry(cfg, agent_id) or {}
    configured = entry.get("workspace")
    if not configured and agent_id == resolve_default_agent_id(cfg):
        configured = _agent_defaults(cfg).get("workspace")
    if isinstance(configured, str) and configured.strip():
        return Path(os.path.expanduser(configured.strip())).resolve()
    base = get_oni_home() / ".oni"
    if agent_id == DEFAULT_AGENT_ID:
        return base / "workspace"
    return base / f"workspace-{agent_id}"


def resolve_agent_dir(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Path:
    agent_id = normalize_agent_id(agent_id)
    entry = _find_agent_entry(cfg, agent_id) or {}
    configured = entry.get("agentDir")
    if isinstance(configured, str) and configured.strip():
        return Path(os.path.expanduser(configured.strip())).resolve()
    return get_state_dir() / "agents" / agent_id / "agent"


# =============================================================================
# Model resolution
# =============================================================================

def _model_primary(model: Any) -> Optional[str]:
    if isinstance(model, str):
        return model.strip() or None
    if isinstance(model, dict):
        primary = model.get("primary")
        if isinstance(primary, str) and primary.strip():
            return primary.strip()
    return None


def _model_fallbacks(model: Any) -> Optional[List[str]]:
    """Tri-state read of ``model.fallbacks``: None when the key is absent."""
    if not isinstance(model, dict) or "fallbacks" not in model:
        return None
    raw = model.get("fallbacks")
    if not isinstance(raw, list):
        return None
    return [str(m).strip() for m in raw if isinstance(m, str) and m.strip()]


def resolve_agent_explicit_model_primary(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Optional[str]:
    """The primary literally present on the agent's own entry."""
    entry = _find_agent_entry(cfg, agent_id)
    if entry is None:
        return None
    return _model_primary(entry.get("model"))


# Kept for callers that only care about the agent's own entry.
resolve_agent_model_primary = resolve_agent_explicit_model_primary


def resolve_agent_effective_model_primary(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Optional[str]:
    """Explicit primary, else the global ``agents.defaults.model`` primary."""
    explicit = resolve_agent_explicit_model_primary(cfg, agent_id)
    if explicit:
        return explicit
    return _model_primary(_agent_defaults(cfg).get("model"))


def resolve_agent_model_fallbacks_override(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Optional[List[str]]:
    """
    Agent-level fallbacks override.

    Returns None when the agent does not set ``model.fallbacks`` (inherit),
    and ``[]`` when it explicitly disables inherited fallbacks. A bare-string
    ``model`` never overrides fallbacks.
    """
    entry = _find_agent_entry(cfg, agent_id)
    if entry is None:
        return None
    return _model_fallbacks(entry.get("model"))


def resolve_effective_model_fallbacks(
    cfg: Optional[Dict[str, Any]],
    agent_id: Optional[str],
    has_session_model_override: bool = False,
) -> List[str]:
    """
    Fallbacks for the next turn.

    The agent override wins when defined (including an explicit empty list),
    otherwise the defaults apply. A session-level model override swaps the
    primary only; it never changes which fallbacks are inherited.
    """
    override = resolve_agent_model_fallbacks_override(cfg, agent_id)
    if override is not None:
        return list(override)
    defaults = _model_fallbacks(_agent_defaults(cfg).get("model"))
    return list(defaults or [])


def parse_agent_id_from_session_key(session_key: Optional[str]) -> Optional[str]:
    """Second segment of ``agent:<id>:<context>``, or None when malformed."""
    if not isinstance(session_key, str):
        return None
    parts = session_key.strip().split(":")
    if len(parts) < 3 or parts[0].lower() != "agent":
        return None
    agent_id = parts[1].strip().lower()
    if not agent_id or not any(p.strip() for p in parts[2:]):
        return None
    return agent_id


def resolve_fallback_agent_id(agent_id: Optional[str] = None, session_key: Optional[str] = None) -> Optional[str]:
    """Explicit agent id first (lower-cased), else the id parsed from the session key."""
    if isinstance(agent_id, str) and agent_id.strip():
        return agent_id.strip().lower()
    return parse_agent_id_from_session_key(session_key)


def resolve_run_model_fallbacks_override(
    cfg: Optional[Dict[str, Any]],
    agent_id: Optional[str] = None,
    session_key: Optional[str] = None,
) -> Optional[List[str]]:
    resolved = resolve_fallback_agent_id(agent_id, session_key)
    if not resolved:
        return None
    return resolve_agent_model_fallbacks_override(cfg, resolved)


def has_configured_model_fallbacks(
    cfg: Optional[Dict[str, Any]],
    agent_id: Optional[str] = None,
    session_key: Optional[str] = None,
) -> bool:
    override = resolve_run_model_fallbacks_override(cfg, agent_id, session_key)
    if override is not None:
        return len(override) > 0
    defaults = _model_fallbacks(_agent_defaults(cfg).get("model"))
    return bool(defaults)


def resolve_model_chain(
    cfg: Optional[Dict[str, Any]],
    agent_id: Optional[str],
    session_model: Optional[str] = None,
) -> ModelChain:
    """Primary + fallbacks for the next turn of ``agent_id``."""
    if session_model:
        return ModelChain(
            primary=session_model,
            fallbacks=resolve_effective_model_fallbacks(cfg, agent_id, has_session_model_override=True),
        )
    return ModelChain(
        primary=resolve_agent_effective_model_primary(cfg, agent_id),
        fallbacks=resolve_effective_model_fallbacks(cfg, agent_id),
    )


def resolve_agent_identity(cfg: Optional[Dict[str, Any]], agent_id: Optional[str]) -> Dict[str, Any]:
    """Display identity for an agent: configured identity, else its name/id."""
    agent_id = normalize_agent_id(agent_id)
    agent = resolve_agent_config(cfg, agent_id)
    identity = dict(agent.identity or {}) if agent else {}
    name = identity.get("name") or (agent.name if agent else None) or agent_id
    return {
        "agentId": agent_id,
        "name": name,
        "emoji": identity.get("emoji"),
        "avatar": identity.get("avatar"),
        "theme": identity.get("theme"),
    }
