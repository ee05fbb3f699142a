from __future__ import annotations
import json
import operator
from dataclasses import dataclass, field, fields as dc_fields
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import RuleError
from .models import (
    Alert, RuleSpec, TelemetrySnapshot,
    SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_RANK,
)


# ──────────────────────────────────────────────
# Thresholds
# ──────────────────────────────────────────────
@dataclass
class RuleConfig:
    cpu_high_pct: float = 90.0
    mem_ram_pct: float = 90.0
    mem_swap_pct: float = 60.0
    proc_burst: int = 10
    net_spike_bytes: float = 1024 * 1024     # rx+tx per second
    file_events_burst: int = 50
    persist_min_change: int = 1

    def normalized(self) -> "RuleConfig":
        """Non-positive thresholds fall back to the defaults."""
        default = RuleConfig()
        values = {}
        for f in dc_fields(self):
            v = getattr(self, f.name)
            values[f.name] = v if v and v > 0 else getattr(default, f.name)
        return RuleConfig(**values)


def _warming(snapshot: TelemetrySnapshot) -> bool:
    return bool(snapshot.fields and snapshot.fields.get("warming_up"))


# ──────────────────────────────────────────────
# Built-in rules
# ──────────────────────────────────────────────
def rule_cpu_high(threshold: float) -> RuleSpec:
    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        val = s.metric("cpu.total_pct")
        if val is None or val < threshold:
            return []
        return [Alert(
            rule_id="cpu.high_usage",
            title="High CPU usage",
            severity=SEVERITY_MEDIUM,
            message=f"CPU usage {val:.2f}% exceeds threshold {threshold:.0f}%",
            evidence={"cpu.total_pct": val},
        )]
    return RuleSpec(id="cpu.high_usage", title="High CPU usage", severity=SEVERITY_MEDIUM,
                    description="Total CPU usage above threshold", tags=["resource"],
                    evaluate=evaluate)


def rule_mem_pressure(ram_threshold: float, swap_threshold: float) -> RuleSpec:
    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        alerts: List[Alert] = []
        ram = s.metric("mem.ram.used_pct")
        swap = s.metric("mem.swap.used_pct")
        if ram is not None and ram >= ram_threshold:
            alerts.append(Alert(
                rule_id="mem.high_usage",
                title="High RAM usage",
                severity=SEVERITY_MEDIUM,
                message=f"RAM usage {ram:.2f}% exceeds {ram_threshold:.0f}%",
                evidence={"mem.ram.used_pct": ram},
            ))
        if swap is not None and swap >= swap_threshold:
            alerts.append(Alert(
                rule_id="mem.swap_pressure",
                title="Swap pressure",
                severity=SEVERITY_LOW,
                message=f"Swap usage {swap:.2f}% exceeds {swap_threshold:.0f}%",
                evidence={"mem.swap.used_pct": swap},
            ))
        return alerts
    return RuleSpec(id="mem.pressure", title="Memory pressure", severity=SEVERITY_MEDIUM,
                    description="RAM or swap usage above threshold", tags=["resource"],
                    evaluate=evaluate)


def rule_proc_burst(limit: int) -> RuleSpec:
    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        if _warming(s):
            return []
        n = s.metric("proc.new")
        if n is None or int(n) < limit:
            return []
        pids = [p.get("pid") for p in (s.fields.get("proc.new") or []) if isinstance(p, dict)]
        evidence = {"proc.new": int(n)}
        if pids:
            evidence["pids"] = pids[:50]
        return [Alert(
            rule_id="proc.burst",
            title="Process burst",
            severity=SEVERITY_MEDIUM,
            message=f"{int(n)} new processes detected (limit {limit})",
            evidence=evidence,
        )]
    return RuleSpec(id="proc.burst", title="Process burst", severity=SEVERITY_MEDIUM,
                    description="Many processes started within one capture interval",
                    tags=["process"], evaluate=evaluate)


def rule_net_spike(total_bytes_per_sec: float) -> RuleSpec:
    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        if _warming(s):
            return []
        rx = s.metric("net.rx_bytes_per_sec")
        tx = s.metric("net.tx_bytes_per_sec")
        if rx is None and tx is None:
            return []
        rx, tx = rx or 0.0, tx or 0.0
        total = rx + tx
        if total < total_bytes_per_sec:
            return []
        return [Alert(
            rule_id="net.spike",
            title="Network spike",
            severity=SEVERITY_LOW,
            message=f"Network throughput {total:.0f}B/s exceeds {total_bytes_per_sec:.0f}B/s",
            evidence={"net.rx_bytes_per_sec": rx, "net.tx_bytes_per_sec": tx},
        )]
    return RuleSpec(id="net.spike", title="Network spike", severity=SEVERITY_LOW,
                    description="Combined RX+TX throughput above threshold",
                    tags=["network"], evaluate=evaluate)


def rule_file_event_burst(limit: int) -> RuleSpec:
    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        if _warming(s):
            return []
        ev = s.metric("file.events")
        if ev is None or int(ev) < limit:
            return []
        return [Alert(
            rule_id="file.events_burst",
            title="File change burst",
            severity=SEVERITY_LOW,
            message=f"{int(ev)} file events detected (limit {limit})",
            evidence={"file.events": int(ev)},
        )]
    return RuleSpec(id="file.events_burst", title="File change burst", severity=SEVERITY_LOW,
                    description="Many file changes within one capture interval",
                    tags=["file"], evaluate=evaluate)


def rule_persistence_change(min_changes: int) -> RuleSpec:
    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        added = s.metric("persist.added")
        changed = s.metric("persist.changed")
        removed = s.metric("persist.removed")
        if added is None and changed is None and removed is None:
            return []
        added, changed, removed = int(added or 0), int(changed or 0), int(removed or 0)
        if added + changed + removed < min_changes:
            return []
        evidence = {"persist.added": added, "persist.changed": changed, "persist.removed": removed}
        entries = s.fields.get("persist.diff") if s.fields else None
        if entries:
            evidence["entries"] = entries
        return [Alert(
            rule_id="persist.change",
            title="Persistence modified",
            severity=SEVERITY_HIGH,
            message=f"Persistence entries changed (added={added} changed={changed} removed={removed})",
            evidence=evidence,
        )]
    return RuleSpec(id="persist.change", title="Persistence modified", severity=SEVERITY_HIGH,
                    description="Autorun, service or scheduled task entries changed",
                    tags=["persistence"], evaluate=evaluate)


def default_rules(cfg: Optional[RuleConfig] = None) -> List[RuleSpec]:
    cfg = (cfg or RuleConfig()).normalized()
    return [
        rule_cpu_high(cfg.cpu_high_pct),
        rule_mem_pressure(cfg.mem_ram_pct, cfg.mem_swap_pct),
        rule_proc_burst(int(cfg.proc_burst)),
        rule_net_spike(cfg.net_spike_bytes),
        rule_file_event_burst(int(cfg.file_events_burst)),
        rule_persistence_change(int(cfg.persist_min_change)),
    ]


# ──────────────────────────────────────────────
# Declarative metric-threshold rules
# ──────────────────────────────────────────────
_OPS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass
class RuleDefinition:
    id: str
    metric: str
    threshold: float
    op: str = ">="
    title: str = ""
    severity: str = SEVERITY_MEDIUM
    source: str = ""
    tags: List[str] = field(default_factory=list)

    def compile(self) -> RuleSpec:
        """Builds the same RuleSpec shape the built-in rules use."""
        if not self.id:
            raise RuleError("rule definition needs an id")
        if not self.metric:
            raise RuleError(f"rule {self.id}: metric is empty")
        cmp = _OPS.get(self.op)
        if cmp is None:
            raise RuleError(f"rule {self.id}: unsupported operator {self.op!r}")
        severity = (self.severity or SEVERITY_MEDIUM).lower()
        if severity not in SEVERITY_RANK:
            raise RuleError(f"rule {self.id}: unknown severity {self.severity!r}")
        threshold = float(self.threshold)
        metric = self.metric
        rule_id = self.id
        title = self.title or rule_id
        op = self.op

        def evaluate(s: TelemetrySnapshot) -> List[Alert]:
            val = s.metric(metric)
            if val is None or not cmp(val, threshold):
                return []
            return [Alert(
                rule_id=rule_id,
                message=f"{metric}={val:.2f} {op} {threshold:g}",
                evidence={metric: val, "threshold": threshold, "op": op},
            )]

        return RuleSpec(id=rule_id, title=title, severity=severity, source=self.source,
                        tags=list(self.tags), description=f"{metric} {op} {threshold:g}",
                        evaluate=evaluate)


def load_rule_definitions(path: str) -> List[RuleDefinition]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise RuleError(f"read rule definitions {path}: {e}") from e
    if not isinstance(data, list):
        raise RuleError(f"rule definitions {path}: expected a JSON list")
    known = {f.name for f in dc_fields(RuleDefinition)}
    out: List[RuleDefinition] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise RuleError(f"rule definitions {path}: entry {i} is not an object")
        try:
            out.append(RuleDefinition(**{k: v for k, v in item.items() if k in known}))
        except TypeError as e:
            raise RuleError(f"rule definitions {path}: entry {i}: {e}") from e
    return out
