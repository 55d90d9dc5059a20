"""
Session store maintenance.

``plan_cleanup`` is pure: given the records of one store it decides which
entries are pruned (older than ``pruneAfter``) and which are capped
(beyond ``maxEntries``, oldest first). ``run_cleanup`` applies the plan
to one or every agent's store. In ``warn`` mode (the default) it only
reports; ``enforce`` (from config, or forced by the caller) rewrites the
store and archives the transcripts of removed entries.
"""

import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from agent.scope import agent_exists, list_agent_ids, normalize_agent_id, resolve_default_agent_id
from gateway.config import MAINTENANCE_MODES, parse_duration_ms
from gateway.errors import ConfigError, StoreError
from gateway.session import (
    SessionRecord,
    archive_transcript,
    dump_store_file,
    read_store_file,
    resolve_store_path,
    store_lock,
)

logger = logging.getLogger(__name__)

DEFAULT_MODE = "warn"
DEFAULT_PRUNE_AFTER = "30d"
DEFAULT_MAX_ENTRIES = 500

ACTION_KEEP = "keep"
ACTION_PRUNE = "prune"
ACTION_CAP = "cap"


@dataclass
class MaintenancePolicy:
    mode: str = DEFAULT_MODE
    prune_after_ms: int = parse_duration_ms(DEFAULT_PRUNE_AFTER)
    max_entries: int = DEFAULT_MAX_ENTRIES

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "MaintenancePolicy":
        session = (cfg or {}).get("session") if isinstance((cfg or {}).get("session"), dict) else {}
        section = session.get("maintenance") if isinstance(session.get("maintenance"), dict) else {}
        mode = section.get("mode") or DEFAULT_MODE
        if mode not in MAINTENANCE_MODES:
            raise ConfigError(f"session.maintenance.mode must be one of {', '.join(MAINTENANCE_MODES)}")
        try:
            prune_after_ms = parse_duration_ms(section.get("pruneAfter", DEFAULT_PRUNE_AFTER))
        except ValueError as e:
            raise ConfigError(f"session.maintenance.pruneAfter: {e}") from e
        max_entries = section.get("maxEntries", DEFAULT_MAX_ENTRIES)
        if not isinstance(max_entries, int) or isinstance(max_entries, bool) or max_entries < 1:
            raise ConfigError("session.maintenance.maxEntries must be an integer >= 1")
        return cls(mode=mode, prune_after_ms=prune_after_ms, max_entries=max_entries)


@dataclass
class CleanupAction:
    key: str
    action: str
    updated_at: int
    model: Optional[str] = None
    active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "action": self.action,
            "updatedAt": self.updated_at,
            "model": self.model,
            "active": self.active,
        }


@dataclass
class CleanupPlan:
    actions: List[CleanupAction]
    before_count: int
    after_count: int
    pruned: int
    capped: int

    def removed_keys(self) -> List[str]:
        return [a.key for a in self.actions if a.action != ACTION_KEEP]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beforeCount": self.before_count,
            "afterCount": self.after_count,
            "pruned": self.pruned,
            "capped": self.capped,
            "actions": [a.to_dict() for a in self.actions],
        }


def plan_cleanup(
    records: Iterable[SessionRecord],
    policy: MaintenancePolicy,
    now_ms: int,
    active_key: Optional[str] = None,
) -> CleanupPlan:
    """
    Decide what happens to every record; touches nothing.

    Pruning runs first, then the cap is applied to the survivors. The
    active session is never removed and always counts toward the cap.
    """
    ordered = sorted(records, key=lambda r: r.updated_at, reverse=True)
    decisions: Dict[str, str] = {}
    cutoff = now_ms - policy.prune_after_ms

    survivors: List[SessionRecord] = []
    for record in ordered:
        if record.key != active_key and record.updated_at < cutoff:
            decisions[record.key] = ACTION_PRUNE
        else:
            survivors.append(record)

    kept = 0
    if active_key is not None and any(r.key == active_key for r in survivors):
        kept = 1
    for record in survivors:
        if record.key == active_key:
            decisions[record.key] = ACTION_KEEP
            continue
        if kept < policy.max_entries:
            decisions[record.key] = ACTION_KEEP
            kept += 1
        else:
            decisions[record.key] = ACTION_CAP

    actions = [
        CleanupAction(
            key=r.key,
            action=decisions[r.key],
            updated_at=r.updated_at,
            model=r.model,
            active=r.key == active_key,
        )
        for r in ordered
    ]
    pruned = sum(1 for a in actions if a.action == ACTION_PRUNE)
    capped = sum(1 for a in actions if a.action == ACTION_CAP)
    return CleanupPlan(
        actions=actions,
        before_count=len(actions),
        after_count=len(actions) - pruned - capped,
        pruned=pruned,
        capped=capped,
    )


def format_age(age_ms: int) -> str:
    seconds = max(0, age_ms // 1000)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def render_action_rows(actions: Iterable[Dict[str, Any]], now_ms: int) -> List[Tuple[str, str, str, str, str]]:
    """Rows of ``(key, action, age, model, flags)`` from serialized actions, for the dry-run table."""
    rows = []
    for action in actions:
        rows.append((
            action["key"],
            action["action"],
            format_age(now_ms - int(action.get("updatedAt") or 0)),
            action.get("model") or "-",
            "active" if action.get("active") else "",
        ))
    return rows


# =============================================================================
# Targets
# =============================================================================

@dataclass
class CleanupTarget:
    store_path: Path
    agent_id: Optional[str] = None


def resolve_cleanup_targets(
    cfg: Dict[str, Any],
    store: Optional[str] = None,
    agent: Optional[str] = None,
    all_agents: bool = False,
    state_dir: Optional[Path] = None,
) -> List[CleanupTarget]:
    """
    Turn the caller's selector into store paths.

    ``store`` (explicit path), ``agent`` and ``all_agents`` are mutually
    exclusive; with none given the default agent's store is used.
    """
    given = [name for name, value in (("store", store), ("agent", agent), ("all_agents", all_agents)) if value]
    if len(given) > 1:
        raise ConfigError(f"Choose only one of --store, --agent, --all-agents (got {', '.join(given)})")

    if store:
        return [CleanupTarget(store_path=Path(store).expanduser())]
    if all_agents:
        return [
            CleanupTarget(store_path=resolve_store_path(agent_id, state_dir), agent_id=agent_id)
            for agent_id in list_agent_ids(cfg)
        ]
    if agent:
        if not agent_exists(cfg, agent):
            raise ConfigError(f"Unknown agent id: {agent}")
        agent_id = normalize_agent_id(agent)
        return [CleanupTarget(store_path=resolve_store_path(agent_id, state_dir), agent_id=agent_id)]
    agent_id = resolve_default_agent_id(cfg)
    return [CleanupTarget(store_path=resolve_store_path(agent_id, state_dir), agent_id=agent_id)]


# =============================================================================
# Run
# =============================================================================

@dataclass
class CleanupOptions:
    store: Optional[str] = None
    agent: Optional[str] = None
    all_agents: bool = False
    dry_run: bool = False
    enforce: bool = False
    active_key: Optional[str] = None
    fix_orphans: bool = False
    state_dir: Optional[Path] = None
    now_ms: Optional[int] = None


@dataclass
class StoreSummary:
    store_path: str
    agent_id: Optional[str]
    mode: str
    dry_run: bool
    applied: bool = False
    before_count: int = 0
    after_count: int = 0
    pruned: int = 0
    capped: int = 0
    actions: List[CleanupAction] = field(default_factory=list)
    archived_transcripts: int = 0
    orphans: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storePath": self.store_path,
            "agentId": self.agent_id,
            "mode": self.mode,
            "dryRun": self.dry_run,
            "applied": self.applied,
            "beforeCount": self.before_count,
            "afterCount": self.after_count,
            "pruned": self.pruned,
            "capped": self.capped,
            "actions": [a.to_dict() for a in self.actions],
            "archivedTranscripts": self.archived_transcripts,
            "orphans": self.orphans,
            "error": self.error,
        }


@dataclass
class CleanupReport:
    summaries: List[StoreSummary]

    @property
    def ok(self) -> bool:
        return all(s.error is None for s in self.summaries)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "summaries": [s.to_dict() for s in self.summaries]}


def find_orphan_transcripts(store_dir: Path, records: Dict[str, SessionRecord]) -> List[Path]:
    """Transcript files in ``store_dir`` that no record points at."""
    if not store_dir.is_dir():
        return []
    referenced = {r.transcript or f"{r.session_id}.jsonl" for r in records.values()}
    return sorted(p for p in store_dir.glob("*.jsonl") if p.name not in referenced)


def _clean_store(target: CleanupTarget, policy: MaintenancePolicy, options: CleanupOptions,
                 now_ms: int) -> StoreSummary:
    enforce = options.enforce or policy.mode == "enforce"
    mode = "enforce" if enforce else "warn"
    apply = enforce and not options.dry_run
    summary = StoreSummary(
        store_path=str(target.store_path),
        agent_id=target.agent_id,
        mode=mode,
        dry_run=options.dry_run,
    )

    # Read, plan and write under one store lock.
    guard = store_lock(target.store_path) if apply and target.store_path.exists() else nullcontext()
    with guard:
        records = read_store_file(target.store_path)
        plan = plan_cleanup(records.values(), policy, now_ms, options.active_key)
        summary.before_count = plan.before_count
        summary.after_count = plan.after_count
        summary.pruned = plan.pruned
        summary.capped = plan.capped
        summary.actions = plan.actions

        orphans = find_orphan_transcripts(target.store_path.parent, records)
        summary.orphans = [p.name for p in orphans]

        if not apply:
            if plan.pruned or plan.capped:
                logger.info(
                    "Session store %s would drop %d entries (pruned=%d capped=%d); mode=%s dry_run=%s",
                    target.store_path, plan.pruned + plan.capped, plan.pruned, plan.capped, mode, options.dry_run,
                )
            return summary

        removed = plan.removed_keys()
        if removed:
            dump_store_file(target.store_path, {key: r for key, r in records.items() if key not in removed})

    for key in removed:
        record = records[key]
        path = target.store_path.parent / (record.transcript or f"{record.session_id}.jsonl")
        if archive_transcript(path, now_ms) is not None:
            summary.archived_transcripts += 1
    if options.fix_orphans:
        for path in orphans:
            if archive_transcript(path, now_ms) is not None:
                summary.archived_transcripts += 1
    summary.applied = True
    logger.info(
        "Cleaned session store %s: %d -> %d (pruned=%d capped=%d archived=%d)",
        target.store_path, plan.before_count, plan.after_count, plan.pruned, plan.capped,
        summary.archived_transcripts,
    )
    return summary


def run_cleanup(cfg: Dict[str, Any], options: Optional[CleanupOptions] = None) -> CleanupReport:
    """
    Run maintenance over the selected stores.

    Selector and policy problems raise ConfigError before any store is
    touched. A store that cannot be read is reported in its own summary.
    """
    options = options or CleanupOptions()
    policy = MaintenancePolicy.from_config(cfg)
    targets = resolve_cleanup_targets(
        cfg,
        store=options.store,
        agent=options.agent,
        all_agents=options.all_agents,
        state_dir=options.state_dir,
    )
    now = options.now_ms if options.now_ms is not None else int(time.time() * 1000)

    summaries = []
    for target in targets:
        try:
            summaries.append(_clean_store(target, policy, options, now))
        except (StoreError, OSError) as e:
            logger.warning("Session maintenance failed for %s: %s", target.store_path, e)
            summaries.append(StoreSummary(
                store_path=str(target.store_path),
                agent_id=target.agent_id,
                mode="enforce" if options.enforce or policy.mode == "enforce" else "warn",
                dry_run=options.dry_run,
                error=str(e),
            ))
    return CleanupReport(summaries=summaries)
