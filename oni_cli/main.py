#!/usr/bin/env python3
"""
Oni CLI - Main entry point.

Usage:
    oni gateway run                    # Run channels + HTTP/WebSocket server
    oni chat send "hello"              # One turn against an agent
    oni sessions list                  # Sessions of the default agent
    oni sessions cleanup --dry-run     # Preview maintenance
    oni config get agents.defaults     # Read a config value
    oni config set gateway.port 19000  # Write a config value
    oni channels status --probe        # Channel health
    oni channels login whatsapp        # Link WhatsApp by QR code
    oni pairing approve telegram CODE  # Let a DM sender in
    oni devices list                   # Pending / paired devices
    oni doctor --fix                   # Diagnose (and repair) the install

Every command accepts --json and exits with status 1 on failure.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from oni_cli import __version__
from oni_cli import output

logger = logging.getLogger(__name__)

Renderer = Callable[[Dict[str, Any]], None]


# =============================================================================
# Dispatch helpers
# =============================================================================

def _config_path(args) -> Optional[Path]:
    return Path(args.config).expanduser() if getattr(args, "config", None) else None


def build_dispatcher(args, strict: bool = True):
    """
    In-process dispatcher over a runner that never starts its channels.

    ``strict`` validates the config first; config commands pass False so an
    invalid file can still be inspected and repaired.
    """
    from gateway.config import apply_env_overrides, load_config, load_env_files, read_config_file
    from gateway.rpc import RpcDispatcher
    from gateway.run import GatewayRunner

    load_env_files()
    path = _config_path(args)
    cfg = load_config(path) if strict else apply_env_overrides(read_config_file(path))
    return RpcDispatcher(GatewayRunner(cfg), config_path=path)


def run_rpc(args, method: str, params: Dict[str, Any], render: Optional[Renderer] = None,
            strict: bool = True) -> int:
    return run_with_dispatcher(args, lambda dispatcher: dispatcher.call(method, params), render, strict)


def run_with_dispatcher(args, call: Callable[[Any], Awaitable[Dict[str, Any]]],
                        render: Optional[Renderer] = None, strict: bool = True) -> int:
    from gateway.errors import ConfigError

    try:
        dispatcher = build_dispatcher(args, strict=strict)
    except ConfigError as e:
        details = [issue.to_dict() for issue in e.issues] or None
        result = {"ok": False, "error": {"code": "INVALID_REQUEST", "message": e.args[0], "details": details}}
    else:
        result = asyncio.run(call(dispatcher))
    return finish(args, result, render)


def finish(args, result: Dict[str, Any], render: Optional[Renderer] = None) -> int:
    if getattr(args, "json", False):
        output.print_json(result if not result.get("ok") else result["payload"])
        return 0 if result.get("ok") else 1
    if not result.get("ok"):
        output.print_error(result["error"])
        return 1
    (render or output.print_value)(result["payload"])
    return 0


def _drop_none(params: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


def parse_cli_value(raw: str) -> Any:
    """JSON when it parses (numbers, booleans, lists, objects), else the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# =============================================================================
# Commands
# =============================================================================

def cmd_gateway(args):
    """Run the gateway in the foreground."""
    from gateway.config import load_config, load_env_files
    from gateway.errors import ConfigError
    from gateway.run import start_gateway

    if args.gateway_command != "run":
        args.parser.print_help()
        return 1
    load_env_files()
    try:
        cfg = load_config(_config_path(args))
    except ConfigError as e:
        output.print_error({"code": "INVALID_REQUEST", "message": e.args[0],
                            "details": [i.to_dict() for i in e.issues]})
        return 1
    try:
        started = asyncio.run(start_gateway(
            cfg, config_path=_config_path(args), host=args.host, port=args.port, verbose=args.verbose,
        ))
    except KeyboardInterrupt:
        return 0
    return 0 if started else 1


def cmd_chat(args):
    if args.chat_action != "send":
        args.parser.print_help()
        return 1
    params = _drop_none({
        "message": args.message,
        "agentId": args.agent,
        "sessionKey": args.session_key,
        "deliver": args.deliver or None,
    })

    def render(payload):
        output._console.print(payload["reply"])
        if payload.get("attempts"):
            output._console.print(f"[dim]answered by {payload['model']} after "
                                  f"{len(payload['attempts'])} failed attempt(s)[/]")
        for delivery in payload.get("deliveries") or []:
            if not delivery.get("ok"):
                output._console.print(f"[red]delivery to {delivery['channel']} failed:[/] {delivery.get('error')}")

    return run_rpc(args, "chat.send", params, render)


def cmd_sessions(args):
    action = args.sessions_action
    if action == "list":
        return run_rpc(args, "sessions.list", _drop_none({
            "agentId": args.agent,
            "allAgents": args.all_agents or None,
            "activeMinutes": args.active,
            "limit": args.limit,
        }), output.render_sessions)
    if action == "cleanup":
        params = _drop_none({
            "store": args.store,
            "agentId": args.agent,
            "allAgents": args.all_agents or None,
            "dryRun": args.dry_run or None,
            "enforce": args.enforce or None,
            "activeKey": args.active_key,
            "fixOrphans": args.fix_orphans or None,
        })
        return run_rpc(args, "sessions.cleanup", params,
                       lambda payload: output.render_cleanup(payload, show_actions=args.dry_run))
    if action == "reset":
        return run_rpc(args, "sessions.reset", {"key": args.key}, lambda p: output._console.print(
            f"Reset [cyan]{p['key']}[/]: {p['previousSessionId']} -> {p['sessionId']}"))
    if action == "preview":
        return run_rpc(args, "sessions.preview", {"key": args.key, "limit": args.limit}, output.render_preview)
    args.parser.print_help()
    return 1


def cmd_config(args):
    from gateway.config import read_config_file, validate_config
    from gateway.errors import ConfigError
    from oni_constants import get_config_path

    action = args.config_action
    if action == "get":
        return run_rpc(args, "config.get", _drop_none({"path": args.path}),
                       lambda p: output.print_value(p["value"]), strict=False)
    if action == "set":
        params = _drop_none({"path": args.path, "baseHash": args.base_hash})
        params["value"] = parse_cli_value(args.value)
        return run_rpc(args, "config.set", params, lambda p: output._console.print(
            f"Set [cyan]{p['path']}[/] = {json.dumps(p['after'], ensure_ascii=False)}"), strict=False)
    if action == "unset":
        return run_rpc(args, "config.unset", {"path": args.path}, lambda p: output._console.print(
            f"Removed [cyan]{p['path']}[/]" if p["removed"] else f"{p['path']} was not set"), strict=False)
    if action == "path":
        path = _config_path(args) or get_config_path()
        return finish(args, {"ok": True, "payload": {"path": str(path), "exists": path.exists()}},
                      lambda p: print(p["path"]))
    if action == "validate":
        path = _config_path(args) or get_config_path()
        try:
            issues = validate_config(read_config_file(path))
        except ConfigError as e:
            return finish(args, {"ok": False, "error": {"code": "INVALID_REQUEST", "message": e.args[0]}})
        if issues:
            return finish(args, {"ok": False, "error": {
                "code": "INVALID_REQUEST",
                "message": f"Config invalid: {path}",
                "details": [i.to_dict() for i in issues],
            }})
        return finish(args, {"ok": True, "payload": {"path": str(path), "valid": True}},
                      lambda p: output._console.print(f"[green]✓[/] {p['path']} is valid"))
    args.parser.print_help()
    return 1


def cmd_models(args):
    return run_rpc(args, "models.list", {}, output.render_models)


def cmd_skills(args):
    return run_rpc(args, "skills.list", _drop_none({"agentId": getattr(args, "agent", None)}), output.render_skills)


def cmd_agents(args):
    if args.agents_action == "identity":
        return run_rpc(args, "agent.identity", _drop_none({"agentId": getattr(args, "agent", None)}))
    return run_rpc(args, "agents.list", {}, output.render_agents)


def cmd_health(args):
    return run_rpc(args, "health", {}, output.render_health)


def cmd_channels(args):
    action = args.channels_action
    if action == "list":
        return run_rpc(args, "channels.list", {}, output.render_channels)
    if action == "status":
        return run_rpc(args, "channels.status", _drop_none({
            "channel": args.channel,
            "probe": args.probe or None,
            "timeoutMs": args.timeout,
        }), output.render_channel_status)
    if action == "capabilities":
        return run_rpc(args, "channels.capabilities", _drop_none({"channel": args.channel}),
                       output.render_capabilities)
    if action == "resolve":
        return run_rpc(args, "channels.resolve", _drop_none({
            "channel": args.channel,
            "inputs": args.inputs,
            "kind": args.kind,
            "accountId": args.account,
        }), output.render_resolve)
    if action == "add":
        params = _drop_none({
            "channel": args.channel,
            "accountId": args.account,
            "name": args.name,
            "token": args.token,
            "tokenFile": args.token_file,
            "botToken": args.bot_token,
            "appToken": args.app_token,
            "useEnv": args.use_env or None,
            "allowFrom": args.allow_from,
            "dmPolicy": args.dm_policy,
            "groupPolicy": args.group_policy,
            "defaultTo": args.default_to,
            "authDir": args.auth_dir,
            "bridgeUrl": args.bridge_url,
        })
        return run_rpc(args, "channels.add", params, lambda p: output._console.print(
            f"{'Added' if p['created'] else 'Updated'} [cyan]{p['channel']}:{p['accountId']}[/]"
            + (" (restarted)" if p.get("restarted") else "")), strict=False)
    if action == "remove":
        params = _drop_none({"channel": args.channel, "accountId": args.account, "delete": args.delete or None})
        return run_rpc(args, "channels.remove", params, lambda p: output._console.print(
            f"{'Deleted' if p['deleted'] else 'Disabled'} [cyan]{p['channel']}:{p['accountId']}[/]"), strict=False)
    if action == "login":
        return _channels_login(args)
    if action == "logout":
        params = _drop_none({"channel": args.channel, "accountId": args.account})
        return run_rpc(args, "channels.logout", params, lambda p: output._console.print(
            f"[cyan]{p['channel']}:{p['accountId']}[/] {p.get('message') or 'logged out'}"))
    args.parser.print_help()
    return 1


def _channels_login(args) -> int:
    """QR login in two phases: show the code, then block until it is scanned."""
    params = _drop_none({"channel": args.channel, "accountId": args.account})

    async def login(dispatcher):
        started = await dispatcher.call("channels.login", {**params, "force": args.force})
        if not started.get("ok"):
            return started
        if not args.json:
            output._console.print(started["payload"]["message"])
            if started["payload"].get("qrDataUrl"):
                output._console.print(started["payload"]["qrDataUrl"], soft_wrap=True)
        waited = await dispatcher.call("channels.login.wait", _drop_none({**params, "timeoutMs": args.timeout}))
        if waited.get("ok"):
            waited["payload"]["qrDataUrl"] = started["payload"].get("qrDataUrl")
        return waited

    def render(payload):
        colour = "green" if payload["connected"] else "yellow"
        output._console.print(f"[{colour}]{payload['message']}[/]")

    return run_with_dispatcher(args, login, render)


def _print_tokens(payload):
    device = payload.get("device") or {}
    output._console.print(f"Approved [cyan]{device.get('deviceId')}[/]. Tokens (shown once):")
    for role, token in (payload.get("tokens") or {}).items():
        output._console.print(f"  {role}: [bold]{token}[/]")


def cmd_devices(args):
    action = args.devices_action
    if action == "list":
        return run_rpc(args, "devices.list", {}, output.render_devices)
    if action == "approve":
        return run_rpc(args, "devices.approve", {"requestId": args.request_id}, _print_tokens)
    if action == "reject":
        return run_rpc(args, "devices.reject", {"requestId": args.request_id},
                       lambda p: output._console.print(f"Rejected {p['rejected']['requestId']}"))
    if action == "rotate":
        return run_rpc(args, "devices.rotate", _drop_none({
            "deviceId": args.device_id, "role": args.role, "scopes": args.scope,
        }), lambda p: output._console.print(f"New {p['role']} token for {p['deviceId']}: [bold]{p['token']}[/]"))
    if action == "revoke":
        return run_rpc(args, "devices.revoke", {"deviceId": args.device_id, "role": args.role},
                       lambda p: output._console.print(
                           f"Revoked {p['role']} for {p['deviceId']} "
                           f"(remaining: {', '.join(p['remainingRoles']) or 'none'})"))
    if action == "clear":
        return run_rpc(args, "devices.clear", {"confirm": args.yes, "pendingOnly": args.pending_only},
                       lambda p: output._console.print(
                           f"Cleared {p['cleared']['pending']} pending and {p['cleared']['paired']} paired device(s)"))
    args.parser.print_help()
    return 1


def cmd_pairing(args):
    action = args.pairing_action
    if action == "list":
        return run_rpc(args, "pairing.list", _drop_none({"channel": args.channel}), output.render_pairing)
    if action == "approve":
        def render(p):
            output._console.print(f"Approved [cyan]{p['approved']['senderId']}[/] on {p['approved']['channel']}")
            if p.get("notifyError"):
                output._console.print(f"[yellow]Could not notify the sender:[/] {p['notifyError']}")
        return run_rpc(args, "pairing.approve", {"channel": args.channel, "code": args.code}, render)
    if action == "reject":
        return run_rpc(args, "pairing.reject", {"channel": args.channel, "code": args.code},
                       lambda p: output._console.print(f"Rejected {p['rejected']['code']}"))
    if action == "revoke":
        return run_rpc(args, "pairing.revoke", {"channel": args.channel, "senderId": args.sender_id},
                       lambda p: output._console.print(f"Revoked {p['senderId']} on {p['channel']}"))
    if action == "clear":
        return run_rpc(args, "pairing.clear", _drop_none({"channel": args.channel, "confirm": args.yes}),
                       lambda p: output._console.print(f"Cleared {p['cleared']} pending request(s)"))
    args.parser.print_help()
    return 1


def cmd_doctor(args):
    """Check configuration, state and channels."""
    from gateway.config import load_env_files
    from oni_cli.doctor import run_doctor

    load_env_files()
    return run_doctor(args)


def cmd_version(args):
    print(f"Oni v{__version__}")
    print(f"Python: {sys.version.split()[0]}")
    return 0


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oni",
        description="Oni - multi-channel agent gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    oni gateway run               Run the gateway in the foreground
    oni chat send "hi" --agent ops
    oni sessions cleanup --all-agents --dry-run
    oni config set agents.defaults.model '{"primary": "openai/gpt-4o"}'

For more help on a command:
    oni <command> --help
"""
    )
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit")
    parser.add_argument("--config", help="Config file path (default: ~/.oni/oni.json)")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Print raw JSON")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def group(name, help_text, func, dest):
        group_parser = subparsers.add_parser(name, help=help_text, description=help_text)
        group_parser.set_defaults(func=func, parser=group_parser)
        return group_parser, group_parser.add_subparsers(dest=dest)

    def leaf(subs, name, help_text):
        return subs.add_parser(name, help=help_text, parents=[common])

    # =========================================================================
    # gateway command
    # =========================================================================
    _, gateway_sub = group("gateway", "Run the gateway", cmd_gateway, "gateway_command")
    gateway_run = leaf(gateway_sub, "run", "Run channels and the RPC server in the foreground")
    gateway_run.add_argument("--host", help="Bind address (default: gateway.bind or 127.0.0.1)")
    gateway_run.add_argument("--port", type=int, help="Port (default: gateway.port or 18789)")
    gateway_run.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    # =========================================================================
    # chat command
    # =========================================================================
    _, chat_sub = group("chat", "Talk to an agent", cmd_chat, "chat_action")
    chat_send = leaf(chat_sub, "send", "Run one turn and print the reply")
    chat_send.add_argument("message", help="Message text")
    chat_send.add_argument("--agent", help="Agent id (default: the default agent)")
    chat_send.add_argument("--session-key", help="Session key (default: agent:<id>:main)")
    chat_send.add_argument("--deliver", action="store_true", help="Also deliver the reply to the session's chat")

    # =========================================================================
    # sessions command
    # =========================================================================
    _, sessions_sub = group("sessions", "Inspect and maintain session stores", cmd_sessions, "sessions_action")
    sessions_list = leaf(sessions_sub, "list", "List sessions")
    sessions_list.add_argument("--agent", help="Agent id")
    sessions_list.add_argument("--all-agents", action="store_true", help="Every configured agent")
    sessions_list.add_argument("--active", type=int, metavar="MINUTES", help="Only sessions updated recently")
    sessions_list.add_argument("--limit", type=int, help="Max sessions to show")

    sessions_cleanup = leaf(sessions_sub, "cleanup", "Prune stale sessions and cap the store size")
    sessions_cleanup.add_argument("--store", help="Explicit sessions.json path")
    sessions_cleanup.add_argument("--agent", help="Agent id")
    sessions_cleanup.add_argument("--all-agents", action="store_true", help="Every configured agent")
    sessions_cleanup.add_argument("--dry-run", action="store_true", help="Show what would change")
    sessions_cleanup.add_argument("--enforce", action="store_true", help="Apply even when mode is warn")
    sessions_cleanup.add_argument("--active-key", help="Session key that must never be removed")
    sessions_cleanup.add_argument("--fix-orphans", action="store_true", help="Archive orphaned transcripts")

    sessions_reset = leaf(sessions_sub, "reset", "Start a fresh session under the same key")
    sessions_reset.add_argument("key", help="Session key")

    sessions_preview = leaf(sessions_sub, "preview", "Show the last messages of a session")
    sessions_preview.add_argument("key", help="Session key")
    sessions_preview.add_argument("--limit", type=int, default=10, help="Messages to show")

    # =========================================================================
    # config command
    # =========================================================================
    _, config_sub = group("config", "Read and edit the config file", cmd_config, "config_action")
    config_get = leaf(config_sub, "get", "Show a config value (secrets redacted)")
    config_get.add_argument("path", nargs="?", help="Dotted path, e.g. channels.telegram.dmPolicy")
    config_set = leaf(config_sub, "set", "Set a config value")
    config_set.add_argument("path", help="Dotted path")
    config_set.add_argument("value", help="Value (parsed as JSON when possible)")
    config_set.add_argument("--base-hash", help="Refuse if the file changed since this hash")
    config_unset = leaf(config_sub, "unset", "Remove a config value")
    config_unset.add_argument("path", help="Dotted path")
    leaf(config_sub, "path", "Print the config file path")
    leaf(config_sub, "validate", "Validate the config file")

    # =========================================================================
    # models / skills / agents / health
    # =========================================================================
    _, models_sub = group("models", "Configured models", cmd_models, "models_action")
    leaf(models_sub, "list", "List every referenced model")

    _, skills_sub = group("skills", "Agent skills", cmd_skills, "skills_action")
    skills_list = leaf(skills_sub, "list", "List skills visible to an agent")
    skills_list.add_argument("--agent", help="Agent id")

    _, agents_sub = group("agents", "Configured agents", cmd_agents, "agents_action")
    leaf(agents_sub, "list", "List agents")
    agents_identity = leaf(agents_sub, "identity", "Show an agent's identity")
    agents_identity.add_argument("--agent", help="Agent id")

    health_parser = subparsers.add_parser("health", help="Gateway health", parents=[common])
    health_parser.set_defaults(func=cmd_health)

    # =========================================================================
    # channels command
    # =========================================================================
    _, channels_sub = group("channels", "Channel accounts", cmd_channels, "channels_action")
    leaf(channels_sub, "list", "List channels and accounts")
    channels_status = leaf(channels_sub, "status", "Account status")
    channels_status.add_argument("--channel", help="Only this channel")
    channels_status.add_argument("--probe", action="store_true", help="Probe provider APIs")
    channels_status.add_argument("--timeout", type=int, metavar="MS", help="Probe timeout")
    channels_caps = leaf(channels_sub, "capabilities", "What each channel supports")
    channels_caps.add_argument("--channel", help="Only this channel")
    channels_resolve = leaf(channels_sub, "resolve", "Resolve names to provider ids")
    channels_resolve.add_argument("channel", help="Channel id")
    channels_resolve.add_argument("inputs", nargs="+", help="Names, handles or ids")
    channels_resolve.add_argument("--kind", choices=["user", "group"], help="What to resolve (default: user)")
    channels_resolve.add_argument("--account", help="Account id")

    channels_add = leaf(channels_sub, "add", "Add or update a channel account")
    channels_add.add_argument("channel", help="Channel id")
    channels_add.add_argument("--account", help="Account id (default: default)")
    channels_add.add_argument("--name", help="Display name")
    channels_add.add_argument("--token", help="Bot token")
    channels_add.add_argument("--token-file", help="File holding the bot token")
    channels_add.add_argument("--bot-token", help="Slack bot token")
    channels_add.add_argument("--app-token", help="Slack app token")
    channels_add.add_argument("--use-env", action="store_true", help="Read the token from the environment")
    channels_add.add_argument("--allow-from", action="append", help="Allowed sender (repeatable)")
    channels_add.add_argument("--dm-policy", choices=["pairing", "allowlist", "open", "disabled"])
    channels_add.add_argument("--group-policy", choices=["open", "allowlist", "closed"])
    channels_add.add_argument("--default-to", help="Default delivery target")
    channels_add.add_argument("--auth-dir", help="WhatsApp auth directory")
    channels_add.add_argument("--bridge-url", help="WhatsApp bridge URL")

    channels_remove = leaf(channels_sub, "remove", "Disable or delete a channel account")
    channels_remove.add_argument("channel", help="Channel id")
    channels_remove.add_argument("--account", help="Account id")
    channels_remove.add_argument("--delete", action="store_true", help="Delete instead of disabling")

    channels_login = leaf(channels_sub, "login", "Link an account by scanning a QR code")
    channels_login.add_argument("channel", help="Channel id")
    channels_login.add_argument("--account", help="Account id")
    channels_login.add_argument("--force", action="store_true", help="Re-link even when a session exists")
    channels_login.add_argument("--timeout", type=int, metavar="MS", help="How long to wait for the scan")
    channels_logout = leaf(channels_sub, "logout", "Log out and clear the local session")
    channels_logout.add_argument("channel", help="Channel id")
    channels_logout.add_argument("--account", help="Account id")

    # =========================================================================
    # devices command
    # =========================================================================
    _, devices_sub = group("devices", "Paired gateway clients", cmd_devices, "devices_action")
    leaf(devices_sub, "list", "Pending and paired devices")
    devices_approve = leaf(devices_sub, "approve", "Approve a device request")
    devices_approve.add_argument("request_id", help="Request id")
    devices_reject = leaf(devices_sub, "reject", "Reject a device request")
    devices_reject.add_argument("request_id", help="Request id")
    devices_rotate = leaf(devices_sub, "rotate", "Issue a new token for a role")
    devices_rotate.add_argument("device_id", help="Device id")
    devices_rotate.add_argument("--role", required=True, help="Role")
    devices_rotate.add_argument("--scope", action="append", help="Scope (repeatable)")
    devices_revoke = leaf(devices_sub, "revoke", "Revoke a role token")
    devices_revoke.add_argument("device_id", help="Device id")
    devices_revoke.add_argument("--role", required=True, help="Role")
    devices_clear = leaf(devices_sub, "clear", "Remove device requests and pairings")
    devices_clear.add_argument("--yes", "-y", action="store_true", help="Confirm")
    devices_clear.add_argument("--pending-only", action="store_true", help="Only pending requests")

    # =========================================================================
    # pairing command
    # =========================================================================
    _, pairing_sub = group("pairing", "DM pairing codes", cmd_pairing, "pairing_action")
    pairing_list = leaf(pairing_sub, "list", "Pending requests and approved senders")
    pairing_list.add_argument("--channel", help="Only this channel")
    pairing_approve = leaf(pairing_sub, "approve", "Approve a pairing code")
    pairing_approve.add_argument("channel", help="Channel id (telegram, slack, discord, whatsapp)")
    pairing_approve.add_argument("code", help="Pairing code")
    pairing_reject = leaf(pairing_sub, "reject", "Reject a pairing code")
    pairing_reject.add_argument("channel", help="Channel id")
    pairing_reject.add_argument("code", help="Pairing code")
    pairing_revoke = leaf(pairing_sub, "revoke", "Revoke an approved sender")
    pairing_revoke.add_argument("channel", help="Channel id")
    pairing_revoke.add_argument("sender_id", help="Sender id")
    pairing_clear = leaf(pairing_sub, "clear", "Drop pending pairing requests")
    pairing_clear.add_argument("--channel", help="Only this channel")
    pairing_clear.add_argument("--yes", "-y", action="store_true", help="Confirm")

    # =========================================================================
    # doctor / version
    # =========================================================================
    doctor_parser = subparsers.add_parser("doctor", help="Check configuration and state")
    doctor_parser.add_argument("--fix", action="store_true", help="Repair what can be repaired")
    doctor_parser.set_defaults(func=cmd_doctor)

    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv=None) -> int:
    """Main entry point for oni CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        return cmd_version(args)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
