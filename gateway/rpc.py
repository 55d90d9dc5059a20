"""
RPC surface shared by the HTTP/WebSocket server and the CLI.

``RpcDispatcher.call(method, params)`` never raises: it returns
``{"ok": True, "payload": ...}`` or ``{"ok": False, "error": {code, message}}``.
Mutating handlers return what changed so callers can print it.
"""

import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agent.redact import redact_mapping
from agent.scope import (
    agent_exists,
    list_agent_ids,
    normalize_agent_id,
    parse_agent_id_from_session_key,
    resolve_agent_config,
    resolve_agent_identity,
    resolve_agent_workspace_dir,
    resolve_default_agent_id,
    resolve_model_chain,
)
from gateway.config import (
    apply_env_overrides,
    config_hash,
    get_value_at_path,
    read_config_file,
    save_config,
    set_value_at_path,
    unset_value_at_path,
    validate_config,
)
from gateway.errors import AgentRunError, ConfigError, PairingError, RpcError, StoreError
from gateway.maintenance import CleanupOptions, run_cleanup
from gateway.pairing import approve_and_notify
from gateway.platforms.base import ResolveResult, SetupInput
from gateway.platforms.http import TransportError
from gateway.skills import list_skills
from gateway.status import collect_channel_status
from oni_constants import get_config_path

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _require(params: Dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise RpcError(RpcError.INVALID_REQUEST, f"missing required param: {name}")
    return value


def _int_param(params: Dict[str, Any], name: str, default: Optional[int] = None) -> Optional[int]:
    value = params.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise RpcError(RpcError.INVALID_REQUEST, f"{name} must be an integer")
    try:
        return int(value)
    except ValueError:
        raise RpcError(RpcError.INVALID_REQUEST, f"{name} must be an integer")


def collect_models(cfg: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Every model id referenced by defaults, agents and the ``models`` catalog."""
    models: Dict[str, Dict[str, Any]] = {}

    def entry(model_id: str) -> Dict[str, Any]:
        return models.setdefault(model_id, {"id": model_id, "alias": None, "primaryFor": [], "fallbackFor": []})

    catalog = cfg.get("models")
    if isinstance(catalog, dict):
        for model_id, meta in catalog.items():
            item = entry(str(model_id))
            if isinstance(meta, dict) and meta.get("alias"):
                item["alias"] = meta["alias"]
    elif isinstance(catalog, list):
        for model_id in catalog:
            if isinstance(model_id, str):
                entry(model_id)

    for agent_id in list_agent_ids(cfg):
        chain = resolve_model_chain(cfg, agent_id)
        if chain.primary:
            entry(chain.primary)["primaryFor"].append(agent_id)
        for fallback in chain.fallbacks:
            entry(fallback)["fallbackFor"].append(agent_id)
    return [models[k] for k in sorted(models)]


class RpcDispatcher:
    """Maps RPC method names onto the gateway runner and its stores."""

    def __init__(self, runner: Any, config_path: Optional[Path] = None):
        self.runner = runner
        self.config_path = Path(config_path) if config_path else get_config_path()
        self.started_at = time.time()
        self._handlers: Dict[str, Handler] = {
            "chat.send": self.chat_send,
            "sessions.list": self.sessions_list,
            "sessions.reset": self.sessions_reset,
            "sessions.preview": self.sessions_preview,
            "sessions.cleanup": self.sessions_cleanup,
            "config.get": self.config_get,
            "config.set": self.config_set,
            "config.unset": self.config_unset,
            "models.list": self.models_list,
            "skills.list": self.skills_list,
            "agent.identity": self.agent_identity,
            "agents.list": self.agents_list,
            "health": self.health,
            "channels.status": self.channels_status,
            "channels.list": self.channels_list,
            "channels.capabilities": self.channels_capabilities,
            "channels.resolve": self.channels_resolve,
            "channels.add": self.channels_add,
            "channels.remove": self.channels_remove,
            "channels.login": self.channels_login,
            "channels.login.wait": self.channels_login_wait,
            "channels.logout": self.channels_logout,
            "devices.list": self.devices_list,
            "devices.approve": self.devices_approve,
            "devices.reject": self.devices_reject,
            "devices.rotate": self.devices_rotate,
            "devices.revoke": self.devices_revoke,
            "devices.clear": self.devices_clear,
            "pairing.list": self.pairing_list,
            "pairing.approve": self.pairing_approve,
            "pairing.reject": self.pairing_reject,
            "pairing.revoke": self.pairing_revoke,
            "pairing.clear": self.pairing_clear,
        }

    @property
    def cfg(self) -> Dict[str, Any]:
        return self.runner.cfg

    @property
    def methods(self) -> List[str]:
        return sorted(self._handlers)

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        handler = self._handlers.get(method)
        if handler is None:
            return {"ok": False, "error": {"code": RpcError.NOT_FOUND, "message": f"unknown method: {method}"}}
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return {"ok": False, "error": {"code": RpcError.INVALID_REQUEST, "message": "params must be an object"}}
        try:
            return {"ok": True, "payload": await handler(params)}
        except RpcError as e:
            return {"ok": False, "error": e.to_dict()}
        except ConfigError as e:
            details = [issue.to_dict() for issue in e.issues] or None
            message = e.args[0] if e.args else "invalid config"
            return {"ok": False, "error": RpcError(RpcError.INVALID_REQUEST, message, details).to_dict()}
        except PairingError as e:
            return {"ok": False, "error": RpcError(RpcError.NOT_FOUND, str(e)).to_dict()}
        except StoreError as e:
            return {"ok": False, "error": RpcError(RpcError.UNAVAILABLE, str(e)).to_dict()}
        except AgentRunError as e:
            return {"ok": False, "error": RpcError(RpcError.UNAVAILABLE, str(e), e.attempts).to_dict()}
        except Exception as e:
            logger.error("RPC %s failed: %s", method, e, exc_info=True)
            return {"ok": False, "error": RpcError(RpcError.INTERNAL, str(e)).to_dict()}

    # =========================================================================
    # Helpers
    # =========================================================================

    def _agent_param(self, params: Dict[str, Any]) -> str:
        agent_id = params.get("agentId")
        if agent_id is None:
            return resolve_default_agent_id(self.cfg)
        if not agent_exists(self.cfg, agent_id):
            raise ConfigError(f"Unknown agent id: {agent_id}")
        return normalize_agent_id(agent_id)

    def _write_config(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Persist the raw (env-free) tree and hand the runner the env-applied one."""
        save_config(raw, self.config_path)
        self.runner.update_config(apply_env_overrides(raw))
        return raw

    def _plugin(self, params: Dict[str, Any]):
        return self.runner.registry.require(_require(params, "channel"))

    def _require_confirm(self, params: Dict[str, Any], what: str) -> None:
        if params.get("confirm") is not True:
            raise RpcError(RpcError.INVALID_REQUEST, f"{what} requires confirm: true")

    # =========================================================================
    # Chat & sessions
    # =========================================================================

    async def chat_send(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.runner.chat_send(
            _require(params, "message"),
            agent_id=params.get("agentId"),
            session_key=params.get("sessionKey"),
            deliver=bool(params.get("deliver", False)),
        )

    async def sessions_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if params.get("allAgents"):
            agent_ids = list_agent_ids(self.cfg)
        else:
            agent_ids = [self._agent_param(params)]
        active_minutes = _int_param(params, "activeMinutes")
        limit = _int_param(params, "limit")
        sessions = []
        for agent_id in agent_ids:
            store = self.runner.session_store(agent_id)
            store.load()
            for record in store.list(active_minutes=active_minutes):
                item = record.to_dict()
                item["key"] = record.key
                sessions.append(item)
        sessions.sort(key=lambda s: s["updatedAt"], reverse=True)
        if limit is not None:
            sessions = sessions[:limit]
        return {"count": len(sessions), "sessions": sessions}

    def _store_for_key(self, key: str):
        agent_id = parse_agent_id_from_session_key(key)
        if agent_id is None:
            raise RpcError(RpcError.INVALID_REQUEST, f"malformed session key: {key}")
        store = self.runner.session_store(agent_id)
        store.load()
        return store

    async def sessions_reset(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = _require(params, "key")
        store = self._store_for_key(key)
        before = store.get(key)
        if before is None:
            raise RpcError(RpcError.NOT_FOUND, f"no session for key: {key}")
        async with self.runner.lanes.hold(key):
            record = store.reset(key)
        return {"key": key, "previousSessionId": before.session_id, "sessionId": record.session_id}

    async def sessions_preview(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = _require(params, "key")
        preview = self._store_for_key(key).preview(key, limit=_int_param(params, "limit", 10))
        if not preview["found"]:
            raise RpcError(RpcError.NOT_FOUND, f"no session for key: {key}")
        return preview

    async def sessions_cleanup(self, params: Dict[str, Any]) -> Dict[str, Any]:
        options = CleanupOptions(
            store=params.get("store"),
            agent=params.get("agentId"),
            all_agents=bool(params.get("allAgents", False)),
            dry_run=bool(params.get("dryRun", False)),
            enforce=bool(params.get("enforce", False)),
            active_key=params.get("activeKey"),
            fix_orphans=bool(params.get("fixOrphans", False)),
            state_dir=self.runner.state_dir,
        )
        report = run_cleanup(self.cfg, options)
        self.runner.reload_session_stores()
        return report.to_dict()

    # =========================================================================
    # Config
    # =========================================================================

    async def config_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        raw = read_config_file(self.config_path)
        path = params.get("path")
        value = get_value_at_path(raw, path) if path else raw
        return {
            "path": path,
            "configPath": str(self.config_path),
            "exists": self.config_path.exists(),
            "value": redact_mapping(value),
            "hash": config_hash(raw),
            "issues": [issue.to_dict() for issue in validate_config(raw)],
        }

    async def config_set(self, params: Dict[str, Any]) -> Dict[str, Any]:
        path = _require(params, "path")
        if "value" not in params:
            raise RpcError(RpcError.INVALID_REQUEST, "missing required param: value")
        raw = read_config_file(self.config_path)
        base_hash = params.get("baseHash")
        if base_hash and base_hash != config_hash(raw):
            raise RpcError(RpcError.INVALID_REQUEST, "config changed since it was read; re-read and retry")
        before = get_value_at_path(raw, path)
        updated = self._write_config(set_value_at_path(raw, path, params["value"]))
        return {
            "path": path,
            "before": redact_mapping(before),
            "after": redact_mapping(get_value_at_path(updated, path)),
            "hash": config_hash(updated),
        }

    async def config_unset(self, params: Dict[str, Any]) -> Dict[str, Any]:
        path = _require(params, "path")
        raw = read_config_file(self.config_path)
        before = get_value_at_path(raw, path)
        updated, removed = unset_value_at_path(raw, path)
        if removed:
            self._write_config(updated)
        return {"path": path, "removed": removed, "before": redact_mapping(before), "hash": config_hash(updated)}

    # =========================================================================
    # Agents, models, skills
    # =========================================================================

    async def models_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"models": collect_models(self.cfg)}

    async def skills_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        agent_id = self._agent_param(params)
        skills = list_skills(self.cfg, agent_id, state_dir=self.runner.state_dir)
        return {"agentId": agent_id, "skills": skills}

    async def agent_identity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return resolve_agent_identity(self.cfg, self._agent_param(params))

    async def agents_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        default_id = resolve_default_agent_id(self.cfg)
        agents = []
        for agent_id in list_agent_ids(self.cfg):
            agent = resolve_agent_config(self.cfg, agent_id)
            agents.append({
                "id": agent_id,
                "default": agent_id == default_id,
                "name": agent.name if agent else None,
                "identity": resolve_agent_identity(self.cfg, agent_id),
                "model": resolve_model_chain(self.cfg, agent_id).to_dict(),
                "workspace": str(resolve_agent_workspace_dir(self.cfg, agent_id)),
            })
        return {"defaultId": default_id, "agents": agents}

    async def health(self, params: Dict[str, Any]) -> Dict[str, Any]:
        snapshots = self.runner.manager.snapshots()
        return {
            "ok": True,
            "ts": int(time.time() * 1000),
            "uptimeMs": int((time.time() - self.started_at) * 1000),
            "running": self.runner.running,
            "defaultAgentId": resolve_default_agent_id(self.cfg),
            "agents": len(list_agent_ids(self.cfg)),
            "channels": {
                key: {"running": snap.running, "connected": snap.connected, "lastError": snap.last_error}
                for key, snap in sorted(snapshots.items())
            },
        }

    # =========================================================================
    # Channels
    # =========================================================================

    async def channels_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await collect_channel_status(
            self.cfg,
            self.runner.registry,
            manager=self.runner.manager,
            probe=bool(params.get("probe", False)),
            timeout_ms=_int_param(params, "timeoutMs", 10000),
            channel=params.get("channel"),
        )

    async def channels_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        channels = []
        for plugin in self.runner.registry.list():
            accounts = []
            if plugin.config is not None:
                for account_id in plugin.config.list_account_ids(self.cfg):
                    account = plugin.config.resolve_account(self.cfg, account_id)
                    configured = account.credentials_ref is not None
                    if plugin.config.describe_account is not None:
                        configured = plugin.config.describe_account(account, self.cfg).configured
                    accounts.append({
                        "accountId": account.account_id,
                        "name": account.name,
                        "enabled": account.enabled,
                        "configured": configured,
                        "running": self.runner.manager.is_running(plugin.id, account.account_id),
                    })
            channels.append({"id": plugin.id, "label": plugin.label, "aliases": list(plugin.aliases),
                             "accounts": accounts})
        return {"channels": channels}

    async def channels_capabilities(self, params: Dict[str, Any]) -> Dict[str, Any]:
        registry = self.runner.registry
        if params.get("channel"):
            return {"channels": [registry.capabilities(params["channel"])]}
        return {"channels": [plugin.describe() for plugin in registry.list()]}

    async def channels_resolve(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        inputs = params.get("inputs") or []
        if isinstance(inputs, str):
            inputs = [inputs]
        if not inputs:
            raise RpcError(RpcError.INVALID_REQUEST, "missing required param: inputs")
        kind = params.get("kind") or "user"
        account_id = params.get("accountId")

        if plugin.resolver and plugin.resolver.resolve_targets:
            results = await plugin.resolver.resolve_targets(self.cfg, account_id, list(inputs), kind)
        else:
            results = []
            for item in inputs:
                target = self.runner.outbound.resolve_target(self.cfg, plugin.id, str(item), account_id)
                results.append(ResolveResult(
                    input=str(item), resolved=target.ok, id=target.to, note=target.error,
                ))
        return {"channel": plugin.id, "kind": kind, "results": [r.to_dict() for r in results]}

    async def channels_add(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        if plugin.setup is None or plugin.setup.apply_account_config is None:
            raise RpcError(RpcError.INVALID_REQUEST, f"channel '{plugin.id}' cannot be set up from here")
        setup = SetupInput.from_dict(params)
        raw = read_config_file(self.config_path)
        account_id = params.get("accountId")
        if plugin.setup.resolve_account_id:
            account_id = plugin.setup.resolve_account_id(raw, account_id)
        if plugin.setup.validate_input:
            error = plugin.setup.validate_input(raw, account_id, setup)
            if error:
                raise ConfigError(error)

        existed = account_id in plugin.config.list_account_ids(raw) if plugin.config else False
        updated = self._write_config(plugin.setup.apply_account_config(raw, account_id, setup))

        restarted = False
        if self.runner.running and plugin.gateway is not None:
            await self.runner.manager.stop_account(plugin.id, account_id)
            restarted = await self.runner.manager.start_account(self.runner.cfg, plugin.id, account_id)
        account = plugin.config.resolve_account(updated, account_id)
        return {
            "channel": plugin.id,
            "accountId": account_id,
            "created": not existed,
            "restarted": restarted,
            "account": redact_mapping(account.to_dict()),
        }

    async def channels_remove(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        if plugin.config is None:
            raise RpcError(RpcError.INVALID_REQUEST, f"channel '{plugin.id}' has no accounts")
        raw = read_config_file(self.config_path)
        account_id = params.get("accountId") or plugin.config.default_account_id(raw)
        if account_id not in plugin.config.list_account_ids(raw):
            raise RpcError(RpcError.NOT_FOUND, f"no account '{account_id}' on {plugin.id}")

        stopped = await self.runner.manager.stop_account(plugin.id, account_id)
        delete = bool(params.get("delete", False))
        dropped = None
        if delete:
            updated = self._write_config(plugin.config.delete_account(raw, account_id))
            channel_gone = plugin.id not in (updated.get("channels") or {})
            dropped = self.runner.pairing_store.drop_account(plugin.id, account_id, clear_allow_from=channel_gone)
        else:
            self._write_config(plugin.config.set_account_enabled(raw, account_id, False))
        return {"channel": plugin.id, "accountId": account_id, "deleted": delete, "disabled": not delete,
                "stopped": stopped, "droppedPairing": dropped}

    def _login_plugin(self, params: Dict[str, Any], hook: str):
        plugin = self._plugin(params)
        if plugin.gateway is None or getattr(plugin.gateway, hook) is None:
            raise RpcError(RpcError.INVALID_REQUEST, f"channel '{plugin.id}' does not support QR login")
        return plugin

    async def channels_login(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._login_plugin(params, "login_with_qr_start")
        account_id = params.get("accountId")
        try:
            result = await plugin.gateway.login_with_qr_start(
                account_id, bool(params.get("force", False)), _int_param(params, "timeoutMs", 30000), self.cfg,
            )
        except TransportError as e:
            raise RpcError(RpcError.UNAVAILABLE, str(e))
        return {"channel": plugin.id, "accountId": account_id, "message": result.message,
                "qrDataUrl": result.qr_data_url}

    async def channels_login_wait(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._login_plugin(params, "login_with_qr_wait")
        account_id = params.get("accountId")
        try:
            result = await plugin.gateway.login_with_qr_wait(
                account_id, _int_param(params, "timeoutMs", 120000), self.cfg,
            )
        except TransportError as e:
            raise RpcError(RpcError.UNAVAILABLE, str(e))
        return {"channel": plugin.id, "accountId": account_id, "connected": result.connected,
                "message": result.message}

    async def channels_logout(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        if plugin.gateway is None or plugin.gateway.logout_account is None:
            raise RpcError(RpcError.INVALID_REQUEST, f"channel '{plugin.id}' does not support logout")
        account = plugin.config.resolve_account(self.cfg, params.get("accountId"))
        stopped = await self.runner.manager.stop_account(plugin.id, account.account_id)
        result = await plugin.gateway.logout_account(self.cfg, account)
        return {"channel": plugin.id, "accountId": account.account_id, "stopped": stopped,
                "cleared": result.cleared, "loggedOut": result.logged_out, "message": result.message}

    # =========================================================================
    # Devices
    # =========================================================================

    async def devices_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.runner.device_store.list()

    async def devices_approve(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.runner.device_store.approve(_require(params, "requestId"))

    async def devices_reject(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"rejected": self.runner.device_store.reject(_require(params, "requestId"))}

    async def devices_rotate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.runner.device_store.rotate(
            _require(params, "deviceId"), _require(params, "role"), scopes=params.get("scopes"),
        )

    async def devices_revoke(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.runner.device_store.revoke(_require(params, "deviceId"), _require(params, "role"))

    async def devices_clear(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self._require_confirm(params, "devices.clear")
        return {"cleared": self.runner.device_store.clear(
            confirm=True, pending_only=bool(params.get("pendingOnly", False)),
        )}

    # =========================================================================
    # Pairing
    # =========================================================================

    async def pairing_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        channel = params.get("channel")
        registry = self.runner.registry
        channel_ids = [registry.require(channel).id] if channel else registry.ids()
        store = self.runner.pairing_store
        return {
            "requests": [r.to_dict() for ch in channel_ids for r in store.list_requests(ch)],
            "allowFrom": {ch: store.read_allow_from(ch) for ch in channel_ids},
        }

    async def pairing_approve(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        return await approve_and_notify(
            self.runner.pairing_store, self.runner.registry, self.cfg, plugin.id, _require(params, "code"),
        )

    async def pairing_reject(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        request = self.runner.pairing_store.reject(plugin.id, _require(params, "code"))
        return {"rejected": request.to_dict()}

    async def pairing_revoke(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plugin = self._plugin(params)
        sender_id = str(_require(params, "senderId"))
        revoked = self.runner.pairing_store.revoke(plugin.id, sender_id)
        if not revoked:
            raise RpcError(RpcError.NOT_FOUND, f"{sender_id} is not approved on {plugin.id}")
        return {"channel": plugin.id, "senderId": sender_id, "revoked": True}

    async def pairing_clear(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self._require_confirm(params, "pairing.clear")
        channel = params.get("channel")
        channel_id = self.runner.registry.require(channel).id if channel else None
        return {"cleared": self.runner.pairing_store.clear_pending(channel_id, confirm=True)}
