"""
Doctor command for oni CLI.

Diagnoses config, state and channel problems; ``--fix`` archives orphaned
transcripts and creates missing state directories.
"""

import os
from typing import Any, Dict, List

from rich.console import Console

from agent.runner import resolve_client_kwargs
from agent.scope import list_agent_ids, resolve_model_chain
from gateway.config import get_gateway_token, read_config_file, validate_config
from gateway.errors import ConfigError, StoreError
from gateway.maintenance import find_orphan_transcripts
from gateway.platforms.base import SecurityContext
from gateway.platforms.registry import build_default_registry
from gateway.session import archive_transcript, read_store_file, resolve_store_path
from oni_constants import get_config_path, get_state_dir

_console = Console()

LOOPBACK_BINDS = ("127.0.0.1", "localhost", "::1")


def check_ok(text: str, detail: str = "", console: Console = _console):
    console.print(f"  [green]✓[/] {text}" + (f" [dim]{detail}[/]" if detail else ""))


def check_warn(text: str, detail: str = "", console: Console = _console):
    console.print(f"  [yellow]⚠[/] {text}" + (f" [dim]{detail}[/]" if detail else ""))


def check_fail(text: str, detail: str = "", console: Console = _console):
    console.print(f"  [red]✗[/] {text}" + (f" [dim]{detail}[/]" if detail else ""))


def check_info(text: str, console: Console = _console):
    console.print(f"    [cyan]→[/] {text}")


def _section(title: str, console: Console) -> None:
    console.print()
    console.print(f"[bold cyan]◆ {title}[/]")


def run_doctor(args, console: Console = _console) -> int:
    """Run diagnostic checks. Returns 1 when anything failed."""
    should_fix = getattr(args, "fix", False)
    config_path = getattr(args, "config", None) or get_config_path()
    state_dir = get_state_dir()

    failures: List[str] = []
    warnings: List[str] = []
    fixed_count = 0

    console.print()
    console.print("[bold cyan]Oni Doctor[/]")

    # =========================================================================
    # Check: config
    # =========================================================================
    _section("Configuration", console)
    cfg: Dict[str, Any] = {}
    if not os.path.exists(config_path):
        check_warn("Config file not found", f"({config_path})", console=console)
        check_info("Defaults apply; run 'oni config set' to create it", console=console)
        warnings.append("config missing")
    else:
        try:
            cfg = read_config_file(config_path)
        except ConfigError as e:
            check_fail("Config file does not parse", str(e), console=console)
            failures.append("config parse")
        else:
            issues = validate_config(cfg)
            if issues:
                check_fail(f"Config has {len(issues)} problem(s)", f"({config_path})", console=console)
                for issue in issues:
                    check_info(str(issue), console=console)
                failures.append("config invalid")
            else:
                check_ok("Config valid", f"({config_path})", console=console)

    # =========================================================================
    # Check: state directory
    # =========================================================================
    _section("State", console)
    if state_dir.is_dir():
        if os.access(state_dir, os.W_OK):
            check_ok("State directory writable", f"({state_dir})", console=console)
        else:
            check_fail("State directory not writable", f"({state_dir})", console=console)
            failures.append("state dir")
    elif should_fix:
        state_dir.mkdir(parents=True, exist_ok=True)
        check_ok("Created state directory", f"({state_dir})", console=console)
        fixed_count += 1
    else:
        check_warn("State directory missing", f"({state_dir})", console=console)
        warnings.append("state dir missing")

    # =========================================================================
    # Check: models
    # =========================================================================
    _section("Models", console)
    if resolve_client_kwargs() is None:
        check_warn("No model endpoint configured", "(set OPENROUTER_API_KEY or OPENAI_BASE_URL + OPENAI_API_KEY)",
                   console=console)
        warnings.append("model endpoint")
    else:
        check_ok("Model endpoint configured", console=console)
    for agent_id in list_agent_ids(cfg):
        chain = resolve_model_chain(cfg, agent_id)
        if chain.primary:
            detail = f"fallbacks: {', '.join(chain.fallbacks)}" if chain.fallbacks else "no fallbacks"
            check_ok(f"Agent {agent_id} uses {chain.primary}", f"({detail})", console=console)
        else:
            check_warn(f"Agent {agent_id} has no model", console=console)
            warnings.append(f"agent {agent_id} model")

    # =========================================================================
    # Check: session stores
    # =========================================================================
    _section("Session stores", console)
    for agent_id in list_agent_ids(cfg):
        store_path = resolve_store_path(agent_id, state_dir)
        if not store_path.exists():
            check_ok(f"{agent_id}: no sessions yet", console=console)
            continue
        try:
            records = read_store_file(store_path)
        except StoreError as e:
            check_fail(f"{agent_id}: session index unreadable", str(e), console=console)
            failures.append(f"store {agent_id}")
            continue
        orphans = find_orphan_transcripts(store_path.parent, records)
        if not orphans:
            check_ok(f"{agent_id}: {len(records)} session(s)", console=console)
        elif should_fix:
            archived = sum(1 for p in orphans if archive_transcript(p) is not None)
            check_ok(f"{agent_id}: archived {archived} orphan transcript(s)", console=console)
            fixed_count += archived
        else:
            check_warn(f"{agent_id}: {len(orphans)} orphan transcript(s)", "(run 'oni doctor --fix' to archive)",
                       console=console)
            warnings.append(f"orphans {agent_id}")

    # =========================================================================
    # Check: channels & security
    # =========================================================================
    _section("Channels", console)
    registry = build_default_registry()
    any_account = False
    for plugin in registry.list():
        if plugin.config is None:
            continue
        for account_id in plugin.config.list_account_ids(cfg):
            account = plugin.config.resolve_account(cfg, account_id)
            if not account.enabled:
                continue
            any_account = True
            configured = True
            if plugin.config.describe_account is not None:
                configured = plugin.config.describe_account(account, cfg).configured
            if configured:
                check_ok(f"{plugin.id}:{account.account_id} configured", console=console)
            else:
                check_warn(f"{plugin.id}:{account.account_id} enabled but not configured", console=console)
                warnings.append(f"{plugin.id} unconfigured")
            if plugin.security is not None and plugin.security.collect_warnings is not None:
                for warning in plugin.security.collect_warnings(SecurityContext(cfg=cfg, account=account)) or []:
                    check_warn(warning, console=console)
                    warnings.append("security")
    if not any_account:
        check_info("No channel accounts enabled", console=console)

    gateway_cfg = cfg.get("gateway") if isinstance(cfg.get("gateway"), dict) else {}
    bind = gateway_cfg.get("bind") or "127.0.0.1"
    if bind not in LOOPBACK_BINDS and not get_gateway_token(cfg):
        check_warn(f"Gateway binds {bind} without an auth token", "(set gateway.auth.token or ONI_GATEWAY_TOKEN)",
                   console=console)
        warnings.append("gateway auth")

    # =========================================================================
    # Summary
    # =========================================================================
    console.print()
    if fixed_count:
        console.print(f"[green]Fixed {fixed_count} issue(s).[/]")
    if failures:
        console.print(f"[red]{len(failures)} check(s) failed[/], {len(warnings)} warning(s)")
        return 1
    if warnings:
        console.print(f"[yellow]{len(warnings)} warning(s)[/]")
    else:
        console.print("[green]All checks passed.[/]")
    return 0
