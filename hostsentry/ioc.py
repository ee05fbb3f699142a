from __future__ import annotations
import json
from dataclasses import dataclass, field, fields as dc_fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigurationError
from .models import Alert, RuleSpec, TelemetrySnapshot, SEVERITY_HIGH

MAX_ALERTS_PER_SNAPSHOT = 50


def _normalize(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for v in values or []:
        v = str(v).strip().lower()
        if not v or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


@dataclass
class IOCConfig:
    process_names: List[str] = field(default_factory=list)
    process_paths: List[str] = field(default_factory=list)
    process_cmdlines: List[str] = field(default_factory=list)
    file_paths: List[str] = field(default_factory=list)
    remote_ips: List[str] = field(default_factory=list)

    def normalized(self) -> "IOCConfig":
        return IOCConfig(**{f.name: _normalize(getattr(self, f.name)) for f in dc_fields(self)})

    def is_empty(self) -> bool:
        return not any(getattr(self, f.name) for f in dc_fields(self))


def load_ioc_config(path: str) -> IOCConfig:
    if not path:
        raise ConfigurationError("ioc config path is empty")
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"read ioc config: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"decode ioc config: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("decode ioc config: expected a JSON object")
    known = {k: data[k] for k in data if k in IOCConfig.__dataclass_fields__}
    return IOCConfig(**known).normalized()


def _get(rec: Any, name: str, default: Any = "") -> Any:
    if isinstance(rec, dict):
        return rec.get(name, default)
    return getattr(rec, name, default)


class _Matcher:
    def __init__(self, cfg: IOCConfig):
        self.proc_names = cfg.process_names
        self.proc_paths = cfg.process_paths
        self.proc_cmdlines = cfg.process_cmdlines
        self.file_paths = cfg.file_paths
        self.remote_ips = set(cfg.remote_ips)

    def match_process(self, rec: Any) -> Tuple[str, str]:
        name = str(_get(rec, "name") or "").lower()
        exe = str(_get(rec, "exe") or "").lower()
        cmd = str(_get(rec, "cmdline") or "").lower()
        for ind in self.proc_names:
            if ind in name:
                return ind, "name"
        for ind in self.proc_paths:
            if ind in exe:
                return ind, "exe"
        for ind in self.proc_cmdlines:
            if ind in cmd:
                return ind, "cmdline"
        return "", ""

    def match_file(self, path: str) -> str:
        path = (path or "").lower()
        for ind in self.file_paths:
            if ind in path:
                return ind
        return ""

    def match_remote_ip(self, ip: str) -> str:
        ip = (ip or "").strip().lower()
        if ip and ip in self.remote_ips:
            return ip
        return ""


def _proc_label(rec: Any) -> str:
    for name in ("name", "exe", "cmdline"):
        v = _get(rec, name)
        if v:
            return str(v)
    return f"pid={_get(rec, 'pid', 0)}"


def rule_ioc_match(cfg: IOCConfig) -> RuleSpec:
    """Matches new processes, file events and new connections against indicator lists."""
    cfg = cfg.normalized()
    matcher: Optional[_Matcher] = None if cfg.is_empty() else _Matcher(cfg)

    def evaluate(s: TelemetrySnapshot) -> List[Alert]:
        if matcher is None or not s.fields:
            return []
        alerts: List[Alert] = []

        for p in s.fields.get("proc.new") or []:
            indicator, fld = matcher.match_process(p)
            if not indicator:
                continue
            pid = _get(p, "pid", 0)
            alerts.append(Alert(
                rule_id="ioc.match",
                message=f"IOC match on process {_proc_label(p)} ({fld}={indicator})",
                evidence={"kind": "process", "indicator": indicator, "field": fld, "pid": pid,
                          "name": _get(p, "name"), "exe": _get(p, "exe"), "cmdline": _get(p, "cmdline")},
                dedup_key=f"ioc|process|{indicator}|{pid}",
            ))
            if len(alerts) >= MAX_ALERTS_PER_SNAPSHOT:
                return alerts

        for e in s.fields.get("file.events") or []:
            path = str(_get(e, "path") or "")
            indicator = matcher.match_file(path)
            if not indicator:
                continue
            alerts.append(Alert(
                rule_id="ioc.match",
                message=f"IOC match on file {path} (path={indicator})",
                evidence={"kind": "file", "indicator": indicator, "path": path, "event": _get(e, "type")},
                dedup_key=f"ioc|file|{indicator}|{path}",
            ))
            if len(alerts) >= MAX_ALERTS_PER_SNAPSHOT:
                return alerts

        for c in s.fields.get("conn.new") or []:
            rip = str(_get(c, "remote_ip") or "")
            indicator = matcher.match_remote_ip(rip)
            if not indicator:
                continue
            pid = _get(c, "pid", 0)
            alerts.append(Alert(
                rule_id="ioc.match",
                message=f"IOC match on remote IP {rip}",
                evidence={"kind": "connection", "indicator": indicator, "remote_ip": rip,
                          "remote_port": _get(c, "remote_port", 0), "pid": pid},
                dedup_key=f"ioc|conn|{indicator}|{rip}|{pid}",
            ))
            if len(alerts) >= MAX_ALERTS_PER_SNAPSHOT:
                return alerts
        return alerts

    return RuleSpec(id="ioc.match", title="IOC match", severity=SEVERITY_HIGH,
                    description="Known-bad process, file path or remote address observed",
                    tags=["ioc"], evaluate=evaluate)
