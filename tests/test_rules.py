from __future__ import annotations
import json

import pytest

from hostsentry.errors import ConfigurationError, RuleError
from hostsentry.ioc import IOCConfig, load_ioc_config, rule_ioc_match
from hostsentry.models import TelemetryMeta, TelemetrySnapshot
from hostsentry.rules import (
    RuleConfig, RuleDefinition, default_rules, load_rule_definitions,
    rule_cpu_high, rule_file_event_burst, rule_mem_pressure, rule_net_spike,
    rule_persistence_change, rule_proc_burst,
)


def snap(metrics=None, fields=None, capturer=""):
    return TelemetrySnapshot(metrics=metrics or {}, fields=fields or {},
                             meta=TelemetryMeta(capturer=capturer))


def test_cpu_high_threshold():
    rule = rule_cpu_high(90)
    assert rule.evaluate(snap({"cpu.total_pct": 89.9})) == []
    assert rule.evaluate(snap({})) == []
    [a] = rule.evaluate(snap({"cpu.total_pct": 90}))
    assert a.rule_id == "cpu.high_usage"
    assert a.evidence == {"cpu.total_pct": 90.0}


def test_mem_pressure_emits_ram_and_swap():
    rule = rule_mem_pressure(90, 60)
    alerts = rule.evaluate(snap({"mem.ram.used_pct": 95, "mem.swap.used_pct": 70}))
    assert [(a.rule_id, a.severity) for a in alerts] == [
        ("mem.high_usage", "medium"), ("mem.swap_pressure", "low")]
    assert rule.evaluate(snap({"mem.ram.used_pct": 50})) == []


def test_proc_burst_collects_pids_and_skips_warmup():
    rule = rule_proc_burst(2)
    fields = {"proc.new": [{"pid": 10}, {"pid": 11}]}
    [a] = rule.evaluate(snap({"proc.new": 2}, fields))
    assert a.evidence["pids"] == [10, 11]
    assert rule.evaluate(snap({"proc.new": 2}, {**fields, "warming_up": True})) == []


def test_net_spike_sums_directions():
    rule = rule_net_spike(1000)
    assert rule.evaluate(snap({"net.rx_bytes_per_sec": 400, "net.tx_bytes_per_sec": 400})) == []
    [a] = rule.evaluate(snap({"net.rx_bytes_per_sec": 600, "net.tx_bytes_per_sec": 400}))
    assert a.rule_id == "net.spike"
    [a] = rule.evaluate(snap({"net.rx_bytes_per_sec": 2000}))
    assert a.evidence["net.tx_bytes_per_sec"] == 0.0


def test_file_event_burst():
    rule = rule_file_event_burst(3)
    assert rule.evaluate(snap({"file.events": 2})) == []
    assert len(rule.evaluate(snap({"file.events": 3}))) == 1


def test_persistence_change_uses_structured_metrics():
    rule = rule_persistence_change(1)
    assert rule.evaluate(snap({"persist.entries": 4})) == []
    assert rule.evaluate(snap({"persist.added": 0, "persist.changed": 0, "persist.removed": 0})) == []
    diff = {"added": ["file:/etc/cron.d/x"], "changed": [], "removed": []}
    [a] = rule.evaluate(snap({"persist.added": 1}, {"persist.diff": diff}))
    assert a.severity == "high"
    assert a.evidence["entries"] == diff


def test_rule_config_normalized_and_default_rules():
    cfg = RuleConfig(cpu_high_pct=0, proc_burst=-1, mem_ram_pct=80).normalized()
    assert cfg.cpu_high_pct == 90.0
    assert cfg.proc_burst == 10
    assert cfg.mem_ram_pct == 80
    ids = [r.id for r in default_rules()]
    assert ids == ["cpu.high_usage", "mem.pressure", "proc.burst", "net.spike",
                   "file.events_burst", "persist.change"]


def test_rule_definition_compiles_like_builtin():
    spec = RuleDefinition(id="disk.full", metric="disk./.used_pct", op=">", threshold=95,
                          severity="HIGH", source="DISK", tags=["disk"]).compile()
    assert spec.severity == "high"
    assert spec.source == "DISK"
    assert spec.evaluate(snap({"disk./.used_pct": 95})) == []
    [a] = spec.evaluate(snap({"disk./.used_pct": 97.5}))
    assert a.rule_id == "disk.full"
    assert a.evidence["threshold"] == 95.0


@pytest.mark.parametrize("kwargs", [
    {"id": "", "metric": "m", "threshold": 1},
    {"id": "x", "metric": "", "threshold": 1},
    {"id": "x", "metric": "m", "threshold": 1, "op": "=~"},
    {"id": "x", "metric": "m", "threshold": 1, "severity": "urgent"},
])
def test_rule_definition_rejects_bad_input(kwargs):
    with pytest.raises(RuleError):
        RuleDefinition(**kwargs).compile()


def test_load_rule_definitions(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([
        {"id": "conn.many", "metric": "conn.count", "threshold": 500, "ignored": True},
    ]))
    [d] = load_rule_definitions(str(path))
    assert d.metric == "conn.count"
    assert d.op == ">="

    path.write_text('{"id": "x"}')
    with pytest.raises(RuleError):
        load_rule_definitions(str(path))


# ──────────────────────────────────────────────
# IOC
# ──────────────────────────────────────────────
def test_ioc_config_normalizes(tmp_path):
    path = tmp_path / "ioc.json"
    path.write_text(json.dumps({"process_names": [" Evil.EXE ", "evil.exe", ""],
                                "remote_ips": ["10.0.0.9"]}))
    cfg = load_ioc_config(str(path))
    assert cfg.process_names == ["evil.exe"]
    assert cfg.remote_ips == ["10.0.0.9"]
    assert not cfg.is_empty()
    assert IOCConfig().is_empty()

    with pytest.raises(ConfigurationError):
        load_ioc_config("")


def test_ioc_rule_matches_process_file_and_connection():
    rule = rule_ioc_match(IOCConfig(
        process_names=["miner"], process_cmdlines=["-enc"],
        file_paths=["/tmp/.x"], remote_ips=["203.0.113.7"],
    ))
    fields = {
        "proc.new": [
            {"pid": 42, "name": "xmrMiner", "exe": "/usr/bin/xmr", "cmdline": ""},
            {"pid": 43, "name": "powershell", "exe": "", "cmdline": "powershell -ENC abc"},
            {"pid": 44, "name": "bash", "exe": "/bin/bash", "cmdline": "bash"},
        ],
        "file.events": [{"path": "/tmp/.X/payload", "type": "create"}],
        "conn.new": [{"pid": 7, "remote_ip": "203.0.113.7", "remote_port": 443},
                     {"pid": 8, "remote_ip": "203.0.113.70", "remote_port": 443}],
    }
    alerts = rule.evaluate(snap(fields=fields))
    kinds = [(a.evidence["kind"], a.evidence["indicator"]) for a in alerts]
    assert kinds == [("process", "miner"), ("process", "-enc"),
                     ("file", "/tmp/.x"), ("connection", "203.0.113.7")]
    assert alerts[0].dedup_key == "ioc|process|miner|42"
    assert alerts[1].evidence["field"] == "cmdline"
    assert alerts[3].evidence["pid"] == 7


def test_ioc_rule_caps_alerts_and_handles_empty():
    rule = rule_ioc_match(IOCConfig(process_names=["a"]))
    many = {"proc.new": [{"pid": i, "name": "a"} for i in range(80)]}
    assert len(rule.evaluate(snap(fields=many))) == 50
    assert rule_ioc_match(IOCConfig()).evaluate(snap(fields=many)) == []
