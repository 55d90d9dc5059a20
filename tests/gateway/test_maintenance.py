"""
Tests for gateway/maintenance.py - cleanup planning and application.
"""

import json

import pytest

from gateway.errors import ConfigError
from gateway.maintenance import (
    CleanupOptions,
    MaintenancePolicy,
    format_age,
    plan_cleanup,
    render_action_rows,
    resolve_cleanup_targets,
    run_cleanup,
)
from gateway.session import SessionRecord, SessionStore, resolve_store_path, write_store_file

DAY_MS = 86400000
NOW = 100 * DAY_MS


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _record(key, age_days, agent="main"):
    updated = NOW - int(age_days * DAY_MS)
    return SessionRecord(key=key, session_id=key.replace(":", "_"), agent_id=agent, updated_at=updated,
                         created_at=updated, transcript=f"{key.replace(':', '_')}.jsonl")


def _seed(state_dir, agent, records):
    path = resolve_store_path(agent, state_dir)
    write_store_file(path, {r.key: r for r in records})
    for r in records:
        (path.parent / r.transcript).write_text('{"role": "user"}\n')
    return path


def _cfg(mode="warn", prune="30d", max_entries=500, agents=("main",)):
    return {
        "agents": {"list": [{"id": a} for a in agents]},
        "session": {"maintenance": {"mode": mode, "pruneAfter": prune, "maxEntries": max_entries}},
    }


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class TestPlanCleanup:
    def test_prune_then_cap(self):
        records = [_record(f"agent:main:s{i}", age) for i, age in enumerate([1, 2, 3, 40, 50])]
        policy = MaintenancePolicy(mode="enforce", prune_after_ms=30 * DAY_MS, max_entries=2)
        plan = plan_cleanup(records, policy, NOW)
        actions = {a.key: a.action for a in plan.actions}
        assert actions == {
            "agent:main:s0": "keep",
            "agent:main:s1": "keep",
            "agent:main:s2": "cap",
            "agent:main:s3": "prune",
            "agent:main:s4": "prune",
        }
        assert (plan.before_count, plan.pruned, plan.capped, plan.after_count) == (5, 2, 1, 2)
        assert plan.before_count - plan.pruned - plan.capped == plan.after_count

    def test_active_key_never_removed_and_counts_toward_cap(self):
        records = [_record("agent:main:old", 90), _record("agent:main:a", 1), _record("agent:main:b", 2)]
        policy = MaintenancePolicy(prune_after_ms=30 * DAY_MS, max_entries=2)
        plan = plan_cleanup(records, policy, NOW, active_key="agent:main:old")
        actions = {a.key: a.action for a in plan.actions}
        assert actions["agent:main:old"] == "keep"
        assert actions["agent:main:a"] == "keep"
        assert actions["agent:main:b"] == "cap"
        assert [a.key for a in plan.actions if a.active] == ["agent:main:old"]

    def test_active_alone_exceeds_cap_of_one(self):
        records = [_record("agent:main:a", 1), _record("agent:main:b", 2)]
        plan = plan_cleanup(records, MaintenancePolicy(max_entries=1), NOW, active_key="agent:main:b")
        assert {a.key: a.action for a in plan.actions} == {"agent:main:a": "cap", "agent:main:b": "keep"}

    def test_applying_plan_twice_is_noop(self):
        records = [_record(f"agent:main:s{i}", i * 10) for i in range(6)]
        policy = MaintenancePolicy(prune_after_ms=30 * DAY_MS, max_entries=2)
        first = plan_cleanup(records, policy, NOW)
        survivors = [r for r in records if r.key not in first.removed_keys()]
        second = plan_cleanup(survivors, policy, NOW)
        assert second.removed_keys() == []
        assert second.after_count == first.after_count

    def test_empty_store(self):
        plan = plan_cleanup([], MaintenancePolicy(), NOW)
        assert (plan.before_count, plan.after_count) == (0, 0)


class TestPolicy:
    def test_defaults(self):
        policy = MaintenancePolicy.from_config({})
        assert policy.mode == "warn"
        assert policy.prune_after_ms == 30 * DAY_MS
        assert policy.max_entries == 500

    @pytest.mark.parametrize("section", [
        {"mode": "loud"},
        {"pruneAfter": "someday"},
        {"maxEntries": 0},
        {"maxEntries": True},
    ])
    def test_invalid(self, section):
        with pytest.raises(ConfigError):
            MaintenancePolicy.from_config({"session": {"maintenance": section}})


class TestTargets:
    def test_selectors_are_exclusive(self, tmp_path):
        with pytest.raises(ConfigError):
            resolve_cleanup_targets({}, store="x.json", all_agents=True, state_dir=tmp_path)

    def test_unknown_agent(self, tmp_path):
        with pytest.raises(ConfigError):
            resolve_cleanup_targets(_cfg(), agent="ghost", state_dir=tmp_path)

    def test_all_agents(self, tmp_path):
        targets = resolve_cleanup_targets(_cfg(agents=("main", "ops")), all_agents=True, state_dir=tmp_path)
        assert [t.agent_id for t in targets] == ["main", "ops"]

    def test_default_agent(self, tmp_path):
        targets = resolve_cleanup_targets(_cfg(agents=("ops", "main")), state_dir=tmp_path)
        assert targets[0].store_path == resolve_store_path("ops", tmp_path)


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------

class TestRunCleanup:
    def test_warn_mode_reports_without_writing(self, tmp_path):
        path = _seed(tmp_path, "main", [_record("agent:main:new", 1), _record("agent:main:old", 60)])
        before = path.read_text()
        report = run_cleanup(_cfg(), CleanupOptions(state_dir=tmp_path, now_ms=NOW))
        summary = report.summaries[0]
        assert summary.mode == "warn"
        assert summary.applied is False
        assert summary.pruned == 1
        assert summary.after_count == 1
        assert path.read_text() == before

    def test_enforce_rewrites_and_archives(self, tmp_path):
        path = _seed(tmp_path, "main", [_record("agent:main:new", 1), _record("agent:main:old", 60)])
        report = run_cleanup(_cfg(mode="enforce"), CleanupOptions(state_dir=tmp_path, now_ms=NOW))
        summary = report.summaries[0]
        assert summary.applied is True
        assert summary.archived_transcripts == 1
        assert list(json.loads(path.read_text())) == ["agent:main:new"]
        assert not (path.parent / "agent_main_old.jsonl").exists()
        assert list(path.parent.glob("agent_main_old.jsonl.deleted.*"))

    def test_enforce_flag_overrides_warn_config(self, tmp_path):
        _seed(tmp_path, "main", [_record("agent:main:old", 60)])
        report = run_cleanup(_cfg(), CleanupOptions(state_dir=tmp_path, now_ms=NOW, enforce=True))
        assert report.summaries[0].applied is True

    def test_dry_run_never_writes(self, tmp_path):
        path = _seed(tmp_path, "main", [_record("agent:main:old", 60)])
        before = path.read_text()
        report = run_cleanup(_cfg(mode="enforce"), CleanupOptions(state_dir=tmp_path, now_ms=NOW, dry_run=True))
        assert report.summaries[0].applied is False
        assert report.summaries[0].dry_run is True
        assert path.read_text() == before

    def test_enforce_is_idempotent(self, tmp_path):
        _seed(tmp_path, "main", [_record(f"agent:main:s{i}", i) for i in range(5)])
        cfg = _cfg(mode="enforce", max_entries=3)
        first = run_cleanup(cfg, CleanupOptions(state_dir=tmp_path, now_ms=NOW)).summaries[0]
        second = run_cleanup(cfg, CleanupOptions(state_dir=tmp_path, now_ms=NOW)).summaries[0]
        assert first.capped == 2
        assert (second.before_count, second.after_count, second.capped) == (3, 3, 0)

    def test_gateway_touch_does_not_restore_pruned_entries(self, tmp_path):
        path = _seed(tmp_path, "main", [_record("agent:main:new", 1), _record("agent:main:old", 60)])
        gateway_store = SessionStore(path)
        assert sorted(gateway_store.load()) == ["agent:main:new", "agent:main:old"]

        cfg = _cfg(mode="enforce")
        first = run_cleanup(cfg, CleanupOptions(state_dir=tmp_path, now_ms=NOW)).summaries[0]
        assert first.pruned == 1

        gateway_store.touch("agent:main:new")
        assert list(json.loads(path.read_text())) == ["agent:main:new"]
        assert "agent:main:old" not in gateway_store.records()
        second = run_cleanup(cfg, CleanupOptions(state_dir=tmp_path, now_ms=NOW)).summaries[0]
        assert second.pruned == 0

    def test_orphans_reported_and_fixed(self, tmp_path):
        path = _seed(tmp_path, "main", [_record("agent:main:new", 1)])
        (path.parent / "stray.jsonl").write_text("{}\n")
        warn = run_cleanup(_cfg(), CleanupOptions(state_dir=tmp_path, now_ms=NOW)).summaries[0]
        assert warn.orphans == ["stray.jsonl"]

        fixed = run_cleanup(_cfg(mode="enforce"),
                            CleanupOptions(state_dir=tmp_path, now_ms=NOW, fix_orphans=True)).summaries[0]
        assert fixed.archived_transcripts == 1
        assert not (path.parent / "stray.jsonl").exists()

    def test_all_agents_gives_one_summary_per_store(self, tmp_path):
        _seed(tmp_path, "main", [_record("agent:main:a", 1)])
        _seed(tmp_path, "ops", [_record("agent:ops:a", 1, agent="ops"), _record("agent:ops:b", 90, agent="ops")])
        report = run_cleanup(_cfg(agents=("main", "ops")),
                             CleanupOptions(state_dir=tmp_path, now_ms=NOW, all_agents=True))
        assert [(s.agent_id, s.pruned) for s in report.summaries] == [("main", 0), ("ops", 1)]
        assert report.ok

    def test_corrupt_store_reported_per_store(self, tmp_path):
        _seed(tmp_path, "main", [_record("agent:main:a", 1)])
        bad = resolve_store_path("ops", tmp_path)
        bad.parent.mkdir(parents=True)
        bad.write_text("[1, 2]")
        report = run_cleanup(_cfg(agents=("main", "ops")),
                             CleanupOptions(state_dir=tmp_path, now_ms=NOW, all_agents=True))
        assert report.ok is False
        assert report.summaries[0].error is None
        assert "JSON object" in report.summaries[1].error

    def test_missing_store_is_empty(self, tmp_path):
        summary = run_cleanup(_cfg(), CleanupOptions(state_dir=tmp_path, now_ms=NOW)).summaries[0]
        assert (summary.before_count, summary.after_count) == (0, 0)


class TestRendering:
    def test_format_age(self):
        assert format_age(5000) == "5s"
        assert format_age(5 * 60000) == "5m"
        assert format_age(3 * 3600000) == "3h"
        assert format_age(2 * DAY_MS) == "2d"

    def test_action_rows(self):
        rows = render_action_rows([{"key": "k", "action": "prune", "updatedAt": NOW - DAY_MS, "active": True}], NOW)
        assert rows == [("k", "prune", "1d", "-", "active")]
