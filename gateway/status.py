"""
Channel status collection.

Merges what the config says (describe), what the manager knows (runtime)
and, on request, live probe/audit results into one snapshot per account.
Accounts are processed concurrently; one account's failure shows up as an
issue on that account only.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from gateway.accounts import ChannelAccount
from gateway.platforms.base import AccountSnapshot, ChannelPlugin, StatusIssue, maybe_await
from gateway.platforms.registry import ChannelRegistry

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_MS = 10000


async def probe_with_timeout(fn: Callable[[], Awaitable[Dict[str, Any]]], timeout_ms: int) -> Dict[str, Any]:
    """Run a probe coroutine with a deadline; never raises."""
    try:
        result = await asyncio.wait_for(fn(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        return {"ok": False, "error": "timeout"}
    except Exception as e:
        return {"ok": False, "error": str(e)}
    if not isinstance(result, dict):
        return {"ok": bool(result)}
    return result


def _generic_issues(plugin: ChannelPlugin, account: ChannelAccount, snap: AccountSnapshot,
                    cfg: Dict[str, Any]) -> List[StatusIssue]:
    issues = []
    if snap.enabled and not snap.configured:
        reason = "not configured"
        if plugin.config and plugin.config.unconfigured_reason:
            reason = plugin.config.unconfigured_reason(account, cfg)
        issues.append(StatusIssue(channel=plugin.id, account_id=snap.account_id, kind="config", message=reason))
    if snap.last_error:
        issues.append(StatusIssue(channel=plugin.id, account_id=snap.account_id, kind="runtime",
                                  message=snap.last_error))
    return issues


async def _account_status(
    plugin: ChannelPlugin,
    cfg: Dict[str, Any],
    account_id: str,
    manager: Any,
    probe: bool,
    timeout_ms: int,
) -> AccountSnapshot:
    config = plugin.config
    account = config.resolve_account(cfg, account_id)
    if config.describe_account is not None:
        snap = config.describe_account(account, cfg)
    else:
        snap = AccountSnapshot(account_id=account.account_id, name=account.name)

    enabled = config.is_enabled(account, cfg) if config.is_enabled else account.enabled
    configured = snap.configured
    if config.is_configured is not None:
        configured = bool(await maybe_await(config.is_configured(account, cfg)))
    snap = snap.merged(enabled=enabled, configured=configured)

    runtime = manager.get_snapshot(plugin.id, account.account_id) if manager is not None else None
    if runtime is not None:
        snap = snap.merged(
            running=runtime.running,
            connected=runtime.connected,
            last_started_at=runtime.last_started_at,
            last_stopped_at=runtime.last_stopped_at,
            last_error=runtime.last_error,
            extra={**snap.extra, **runtime.extra},
        )

    status = plugin.status
    probe_result = None
    audit_result = None
    if probe and enabled and configured and status is not None:
        if status.probe_account is not None:
            probe_result = await probe_with_timeout(
                lambda: status.probe_account(account, timeout_ms, cfg), timeout_ms
            )
        if status.audit_account is not None:
            audit_result = await probe_with_timeout(
                lambda: status.audit_account(account, timeout_ms, cfg, probe_result), timeout_ms
            )
    snap = snap.merged(probe=probe_result, audit=audit_result)

    if status is not None and status.build_account_snapshot is not None:
        snap = await maybe_await(status.build_account_snapshot(
            account=account, cfg=cfg, runtime=runtime, probe=probe_result, audit=audit_result, snapshot=snap,
        ))
    return snap


async def collect_channel_status(
    cfg: Dict[str, Any],
    registry: ChannelRegistry,
    manager: Any = None,
    probe: bool = False,
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    channel: Optional[str] = None,
) -> Dict[str, Any]:
    plugins = [registry.require(channel)] if channel else registry.list()
    channels = []
    all_issues: List[Dict[str, Any]] = []

    for plugin in plugins:
        if plugin.config is None:
            continue
        account_ids = plugin.config.list_account_ids(cfg)

        async def one(account_id: str, plugin: ChannelPlugin = plugin) -> AccountSnapshot:
            try:
                return await _account_status(plugin, cfg, account_id, manager, probe, timeout_ms)
            except Exception as e:
                logger.warning("Status for %s:%s failed: %s", plugin.id, account_id, e)
                return AccountSnapshot(account_id=account_id, last_error=f"status failed: {e}")

        snapshots = list(await asyncio.gather(*(one(a) for a in account_ids)))

        issues: List[StatusIssue] = []
        for snap in snapshots:
            account = plugin.config.resolve_account(cfg, snap.account_id)
            issues.extend(_generic_issues(plugin, account, snap, cfg))
        if plugin.status is not None and plugin.status.collect_status_issues is not None:
            try:
                issues.extend(plugin.status.collect_status_issues(snapshots))
            except Exception as e:
                logger.warning("collect_status_issues for %s failed: %s", plugin.id, e)

        summary = None
        if plugin.status is not None and plugin.status.build_channel_summary is not None:
            default_id = plugin.config.default_account_id(cfg) if plugin.config.default_account_id else account_ids[0]
            default_snap = next((s for s in snapshots if s.account_id == default_id), snapshots[0])
            summary = await maybe_await(plugin.status.build_channel_summary(
                account=plugin.config.resolve_account(cfg, default_id),
                cfg=cfg,
                default_account_id=default_id,
                snapshot=default_snap,
            ))

        issue_dicts = [issue.to_dict() for issue in issues]
        all_issues.extend(issue_dicts)
        channels.append({
            "id": plugin.id,
            "label": plugin.label,
            "accounts": [snap.to_dict() for snap in snapshots],
            "issues": issue_dicts,
            "summary": summary,
        })

    return {"ts": int(time.time() * 1000), "probe": probe, "channels": channels, "issues": all_issues}
