"""
Human-readable rendering of RPC payloads with rich tables.

Each ``render_<group>`` takes the payload dict returned by the dispatcher.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

from gateway.maintenance import format_age, render_action_rows

_console = Console()
_err_console = Console(stderr=True)


def _ts(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _ago(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    return format_age(int(time.time() * 1000) - ms) + " ago"


def print_json(payload: Any, console: Optional[Console] = None) -> None:
    c = console or _console
    c.print_json(json.dumps(payload, ensure_ascii=False, default=str))


def print_error(error: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _err_console
    c.print(f"[bold red]Error[/] [dim]({error.get('code')})[/]: {error.get('message')}")
    for detail in error.get("details") or []:
        if isinstance(detail, dict):
            c.print(f"  [red]-[/] {detail.get('path') or '<root>'}: {detail.get('message')}")
        else:
            c.print(f"  [red]-[/] {detail}")


def print_value(payload: Any, console: Optional[Console] = None) -> None:
    c = console or _console
    if isinstance(payload, (dict, list)):
        print_json(payload, c)
    else:
        c.print(payload)


# =============================================================================
# Sessions
# =============================================================================

def render_sessions(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    sessions = payload.get("sessions") or []
    if not sessions:
        c.print("No sessions found.")
        return
    table = Table(title=f"Sessions ({payload.get('count', len(sessions))})")
    table.add_column("Key", style="bold cyan")
    table.add_column("Updated", style="dim")
    table.add_column("Model")
    table.add_column("Channel", style="dim")
    table.add_column("Tokens", justify="right")
    for s in sessions:
        model = s.get("model") or "-"
        if s.get("modelOverride"):
            model = f"{s['modelOverride']} [yellow](override)[/]"
        table.add_row(
            s.get("key", ""),
            _ago(s.get("updatedAt")),
            model,
            s.get("channel") or "-",
            str((s.get("tokens") or {}).get("total", 0)),
        )
    c.print(table)


def render_cleanup(payload: Dict[str, Any], console: Optional[Console] = None, show_actions: bool = False) -> None:
    c = console or _console
    now = int(time.time() * 1000)
    for summary in payload.get("summaries") or []:
        label = summary.get("agentId") or summary.get("storePath")
        if summary.get("error"):
            c.print(f"[red]✗[/] {label}: {summary['error']}")
            continue

        if show_actions and summary.get("actions"):
            table = Table(title=f"{label} [dim]({summary['storePath']})[/]")
            table.add_column("Key", style="cyan")
            table.add_column("Action")
            table.add_column("Age", justify="right", style="dim")
            table.add_column("Model", style="dim")
            table.add_column("", style="green")
            styles = {"keep": "green", "prune": "yellow", "cap": "red"}
            for key, action, age, model, flags in render_action_rows(summary["actions"], now):
                table.add_row(key, f"[{styles.get(action, 'white')}]{action}[/]", age, model, flags)
            c.print(table)

        state = "applied" if summary.get("applied") else ("dry run" if summary.get("dryRun") else "not applied")
        c.print(
            f"[bold]{label}[/]: {summary['beforeCount']} -> {summary['afterCount']} "
            f"(pruned {summary['pruned']}, capped {summary['capped']}) "
            f"[dim]mode={summary['mode']}, {state}[/]"
        )
        if summary.get("archivedTranscripts"):
            c.print(f"  archived {summary['archivedTranscripts']} transcript(s)")
        if summary.get("orphans"):
            c.print(f"  [yellow]{len(summary['orphans'])} orphan transcript(s)[/] (use --fix-orphans with --enforce)")


def render_preview(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    c.print(f"[bold cyan]{payload['key']}[/] [dim]{payload.get('sessionId')} · "
            f"{payload.get('model') or '-'} · {payload.get('total', 0)} message(s)[/]")
    for message in payload.get("messages") or []:
        role = message.get("role", "?")
        style = "green" if role == "assistant" else "blue"
        c.print(f"[{style}]{role}[/]: {message.get('content', '')}")


# =============================================================================
# Agents, models, skills
# =============================================================================

def render_agents(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    table = Table(title="Agents")
    table.add_column("Id", style="bold cyan")
    table.add_column("Name")
    table.add_column("Primary")
    table.add_column("Fallbacks", style="dim")
    for agent in payload.get("agents") or []:
        model = agent.get("model") or {}
        agent_id = agent["id"] + (" [green](default)[/]" if agent.get("default") else "")
        table.add_row(agent_id, agent.get("name") or "-", model.get("primary") or "-",
                      ", ".join(model.get("fallbacks") or []) or "-")
    c.print(table)


def render_models(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    models = payload.get("models") or []
    if not models:
        c.print("No models configured.")
        return
    table = Table(title="Models")
    table.add_column("Model", style="bold cyan")
    table.add_column("Alias", style="dim")
    table.add_column("Primary for")
    table.add_column("Fallback for", style="dim")
    for m in models:
        table.add_row(m["id"], m.get("alias") or "", ", ".join(m["primaryFor"]), ", ".join(m["fallbackFor"]))
    c.print(table)


def render_skills(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    skills = payload.get("skills") or []
    if not skills:
        c.print(f"No skills found for agent {payload.get('agentId')}.")
        return
    table = Table(title=f"Skills ({payload.get('agentId')})")
    table.add_column("Name", style="bold cyan")
    table.add_column("Description")
    table.add_column("Source", style="dim")
    table.add_column("Enabled")
    for s in skills:
        enabled = "[green]yes[/]" if s.get("enabled") else "[dim]no[/]"
        table.add_row(s["name"], s.get("description") or "", s.get("source") or "", enabled)
    c.print(table)


def render_health(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    state = "[green]running[/]" if payload.get("running") else "[yellow]not running (in-process)[/]"
    c.print(f"Gateway: {state} · default agent [cyan]{payload.get('defaultAgentId')}[/] · "
            f"{payload.get('agents', 0)} agent(s)")
    for key, snap in (payload.get("channels") or {}).items():
        mark = "[green]✓[/]" if snap.get("connected") or snap.get("running") else "[dim]·[/]"
        line = f"  {mark} {key}"
        if snap.get("lastError"):
            line += f" [red]{snap['lastError']}[/]"
        c.print(line)


# =============================================================================
# Channels
# =============================================================================

def render_channels(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    table = Table(title="Channels")
    table.add_column("Channel", style="bold cyan")
    table.add_column("Account")
    table.add_column("Enabled")
    table.add_column("Configured")
    table.add_column("Running", style="dim")
    for channel in payload.get("channels") or []:
        accounts = channel.get("accounts") or []
        if not accounts:
            table.add_row(channel["id"], "[dim]-[/]", "", "", "")
        for account in accounts:
            table.add_row(
                channel["id"],
                account["accountId"] + (f" ({account['name']})" if account.get("name") else ""),
                "yes" if account.get("enabled") else "[dim]no[/]",
                "yes" if account.get("configured") else "[yellow]no[/]",
                "yes" if account.get("running") else "",
            )
    c.print(table)


def render_channel_status(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    table = Table(title="Channel status")
    table.add_column("Channel", style="bold cyan")
    table.add_column("Account")
    table.add_column("State")
    table.add_column("Probe", style="dim")
    for channel in payload.get("channels") or []:
        for account in channel.get("accounts") or []:
            if not account.get("enabled"):
                state = "[dim]disabled[/]"
            elif not account.get("configured"):
                state = "[yellow]not configured[/]"
            elif account.get("connected"):
                state = "[green]connected[/]"
            elif account.get("running"):
                state = "running"
            else:
                state = "idle"
            probe = account.get("probe")
            probe_text = ""
            if isinstance(probe, dict):
                probe_text = "ok" if probe.get("ok") else f"[red]{probe.get('error', 'failed')}[/]"
            table.add_row(channel["id"], account.get("accountId", ""), state, probe_text)
    c.print(table)
    for issue in payload.get("issues") or []:
        c.print(f"[yellow]⚠[/] {issue.get('channel')}:{issue.get('accountId')} {issue.get('message')}")


def render_capabilities(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    table = Table(title="Channel capabilities")
    table.add_column("Channel", style="bold cyan")
    table.add_column("Delivery")
    table.add_column("Chunk limit", justify="right")
    table.add_column("Capabilities", style="dim")
    for channel in payload.get("channels") or []:
        table.add_row(channel["id"], channel.get("deliveryMode") or "-",
                      str(channel.get("textChunkLimit") or "-"), ", ".join(channel.get("capabilities") or []))
    c.print(table)


def render_resolve(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    for result in payload.get("results") or []:
        if result.get("resolved"):
            name = f" ({result['name']})" if result.get("name") else ""
            c.print(f"[green]✓[/] {result['input']} -> {result.get('id')}{name}")
        else:
            c.print(f"[red]✗[/] {result['input']}: {result.get('note') or 'not found'}")


# =============================================================================
# Devices & pairing
# =============================================================================

def render_devices(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    pending = payload.get("pending") or []
    paired = payload.get("paired") or []
    if pending:
        table = Table(title="Pending device requests")
        table.add_column("Request", style="bold cyan")
        table.add_column("Device")
        table.add_column("Platform", style="dim")
        table.add_column("Roles")
        table.add_column("Requested", style="dim")
        for r in pending:
            table.add_row(r["requestId"], r.get("displayName") or r["deviceId"], r.get("platform") or "-",
                          ", ".join(r.get("roles") or []), _ts(r.get("createdAt")))
        c.print(table)
    if paired:
        table = Table(title="Paired devices")
        table.add_column("Device", style="bold cyan")
        table.add_column("Name")
        table.add_column("Roles")
        table.add_column("Approved", style="dim")
        for d in paired:
            table.add_row(d["deviceId"], d.get("displayName") or "-", ", ".join(d.get("roles") or []),
                          _ts(d.get("approvedAt")))
        c.print(table)
    if not pending and not paired:
        c.print("No devices.")


def render_pairing(payload: Dict[str, Any], console: Optional[Console] = None) -> None:
    c = console or _console
    requests = payload.get("requests") or []
    if requests:
        table = Table(title="Pending pairing requests")
        table.add_column("Channel", style="dim")
        table.add_column("Code", style="bold cyan")
        table.add_column("Sender")
        table.add_column("Account", style="dim")
        table.add_column("Requested", style="dim")
        for r in requests:
            sender = r["senderId"] + (f" ({r['senderName']})" if r.get("senderName") else "")
            table.add_row(r["channel"], r["code"], sender, r.get("accountId") or "", _ago(r.get("createdAt")))
        c.print(table)
    else:
        c.print("No pending pairing requests.")
    for channel, entries in (payload.get("allowFrom") or {}).items():
        if entries:
            c.print(f"[bold]{channel}[/] approved: {', '.join(entries)}")
