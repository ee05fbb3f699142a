from __future__ import annotations
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Optional
import json
import logging

from .rules import RuleConfig

log = logging.getLogger(__name__)

AGENT_VERSION = "0.3.0"

APP_DIR = Path.home() / ".hostsentry"
CFG_PATH = APP_DIR / "config.json"

DEFAULT_ALERT_LOG = str(APP_DIR / "alerts.jsonl")


@dataclass
class AgentConfig:
    default_interval_sec: float = 3.0
    queue_capacity: int = 64
    verbose: bool = False
    log_level: str = "INFO"
    log_file: str = ""

    # Capturers
    cpu_enabled: bool = True
    mem_enabled: bool = True
    net_enabled: bool = True
    proc_enabled: bool = True
    conn_enabled: bool = True
    conn_kind: str = "inet"
    disk_enabled: bool = True
    disk_paths: List[str] = field(default_factory=lambda: ["/"])
    persist_enabled: bool = True
    filewatch_enabled: bool = False              # walks the tree each tick
    filewatch_paths: List[str] = field(default_factory=list)
    filewatch_max_files: int = 50_000
    intervals: Dict[str, float] = field(default_factory=dict)   # capturer name -> seconds

    # Detection
    cpu_high_pct: float = 90.0
    mem_ram_pct: float = 90.0
    mem_swap_pct: float = 60.0
    proc_burst: int = 10
    net_spike_bytes: float = 1024 * 1024
    file_events_burst: int = 50
    persist_min_change: int = 1
    dedup_window_sec: float = 30.0               # 0 = disabled
    rate_limit_window_sec: float = 30.0          # 0 = disabled
    rate_limit_burst: int = 20
    ioc_path: str = ""
    custom_rules_path: str = ""

    # Response policy (independent of detector dedup / rate limiting)
    policy_min_severity: str = ""
    policy_allow_rules: List[str] = field(default_factory=list)
    policy_deny_rules: List[str] = field(default_factory=list)
    policy_cooldown_sec: float = 0.0             # 0 = disabled

    # Responders
    log_alerts: bool = True
    alert_file_path: str = DEFAULT_ALERT_LOG     # "" = disabled
    alert_file_max_bytes: int = 5 * 1024 * 1024
    kill_enabled: bool = False
    kill_dry_run: bool = True
    kill_rules: List[str] = field(default_factory=list)

    # Telemetry sink
    telemetry_path: str = ""                     # "" = disabled
    telemetry_max_bytes: int = 5 * 1024 * 1024

    # Alert history / correlation
    history_limit: int = 500
    correlate_cross_source_only: bool = True

    def rule_config(self) -> RuleConfig:
        return RuleConfig(
            cpu_high_pct=self.cpu_high_pct,
            mem_ram_pct=self.mem_ram_pct,
            mem_swap_pct=self.mem_swap_pct,
            proc_burst=self.proc_burst,
            net_spike_bytes=self.net_spike_bytes,
            file_events_burst=self.file_events_burst,
            persist_min_change=self.persist_min_change,
        ).normalized()


def ensure_dirs() -> None:
    APP_DIR.mkdir(parents=True, exist_ok=True)


def load_config(path: Optional[str] = None) -> AgentConfig:
    """
    Reads the JSON config. The default location is created with defaults on
    first run; unknown keys are ignored and an unreadable file falls back to
    defaults.
    """
    cfg_path = Path(path) if path else CFG_PATH
    if not cfg_path.exists():
        cfg = AgentConfig()
        if path is None:
            save_config(cfg)
        return cfg
    try:
        data = json.loads(cfg_path.read_text(encoding="utf-8"))
        known = {k: data[k] for k in data if k in AgentConfig.__dataclass_fields__}
        return AgentConfig(**known)
    except (OSError, ValueError, TypeError) as e:
        log.warning("config %s unreadable (%s); using defaults", cfg_path, e)
        return AgentConfig()


def save_config(cfg: AgentConfig, path: Optional[str] = None) -> None:
    cfg_path = Path(path) if path else CFG_PATH
    if path is None:
        ensure_dirs()
    else:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
    cfg_path.write_text(json.dumps(asdict(cfg), indent=2), encoding="utf-8")
