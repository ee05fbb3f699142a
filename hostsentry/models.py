from __future__ import annotations
from dataclasses import dataclass, field, fields as dc_fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

SEVERITY_INFO     = "info"
SEVERITY_LOW      = "low"
SEVERITY_MEDIUM   = "medium"
SEVERITY_HIGH     = "high"
SEVERITY_CRITICAL = "critical"

SEVERITY_RANK: Dict[str, int] = {
    SEVERITY_INFO: 1,
    SEVERITY_LOW: 2,
    SEVERITY_MEDIUM: 3,
    SEVERITY_HIGH: 4,
    SEVERITY_CRITICAL: 5,
}


def severity_rank(severity: str) -> int:
    """Unknown or empty severities rank below info."""
    return SEVERITY_RANK.get((severity or "").lower(), 0)


@dataclass(frozen=True)
class TelemetryMeta:
    host: str = ""
    agent_version: str = ""
    agent_build: str = ""
    session: str = ""
    timezone: str = ""
    captured_at: Optional[datetime] = None
    os: str = ""
    arch: str = ""
    capturer: str = ""
    interval_sec: float = 0.0
    max_files: int = 0

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in dc_fields(self):
            v = getattr(self, f.name)
            if not v:
                continue
            out[f.name] = v.isoformat() if isinstance(v, datetime) else v
        return out


def merge_meta(own: TelemetryMeta, base: TelemetryMeta) -> TelemetryMeta:
    """Field by field: keep `own` where it is non-empty, take `base` otherwise."""
    values = {}
    for f in dc_fields(own):
        v = getattr(own, f.name)
        values[f.name] = v if v else getattr(base, f.name)
    return TelemetryMeta(**values)


@dataclass(frozen=True)
class TelemetrySnapshot:
    summary: str = ""
    metrics: Dict[str, float] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)
    meta: TelemetryMeta = field(default_factory=TelemetryMeta)

    def metric(self, key: str) -> Optional[float]:
        v = self.metrics.get(key) if self.metrics else None
        return None if v is None else float(v)


@dataclass
class Alert:
    id: str = ""
    rule_id: str = ""
    title: str = ""
    severity: str = ""
    message: str = ""
    source: str = ""
    at: Optional[datetime] = None
    meta: TelemetryMeta = field(default_factory=TelemetryMeta)
    evidence: Dict[str, Any] = field(default_factory=dict)
    correlated: List[str] = field(default_factory=list)
    dedup_key: str = ""
    rate_limited: bool = False

    def key(self) -> str:
        return self.dedup_key or self.rule_id

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "rule_id": self.rule_id,
            "title": self.title,
            "severity": self.severity,
            "message": self.message,
            "source": self.source,
            "at": self.at.isoformat() if self.at else None,
            "meta": self.meta.to_dict(),
        }
        # omitted when zero-valued
        if self.evidence:
            out["evidence"] = self.evidence
        if self.correlated:
            out["correlated"] = list(self.correlated)
        if self.dedup_key:
            out["dedup_key"] = self.dedup_key
        if self.rate_limited:
            out["rate_limited"] = True
        return out


RuleFunc = Callable[[TelemetrySnapshot], List[Alert]]


@dataclass
class RuleSpec:
    id: str
    title: str = ""
    description: str = ""
    severity: str = ""
    tags: List[str] = field(default_factory=list)
    source: str = ""        # restrict to one capturer
    dedup_key: str = ""     # fixed dedup key override
    evaluate: Optional[RuleFunc] = None


@dataclass
class CapturerSchedule:
    capturer: Any
    interval: float = 0.0   # seconds; <= 0 means scheduler default
