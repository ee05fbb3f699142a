from __future__ import annotations
import json
import logging
import sys
import threading
import time
from typing import Any, Callable, Dict, IO, Iterable, List, Optional

import psutil

from .errors import ConfigurationError, ResponderError
from .models import Alert, severity_rank
from .sinks import RotatingJSONLWriter

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Policy
# ──────────────────────────────────────────────
class PolicyEngine:
    """
    Admission control in front of responders. Checked in order:
    deny list, allow list, minimum severity, per-key cooldown.
    """
    def __init__(self, min_severity: str = "",
                 allow_rules: Iterable[str] = (),
                 deny_rules: Iterable[str] = (),
                 cooldown: float = 0.0,
                 clock: Callable[[], float] = time.monotonic):
        self.min_severity = min_severity
        self.allow = set(allow_rules or ())
        self.deny = set(deny_rules or ())
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._next_eligible: Dict[str, float] = {}

    def should_respond(self, alert: Alert) -> bool:
        if alert.rule_id in self.deny:
            return False
        if self.allow and alert.rule_id not in self.allow:
            return False
        if self.min_severity and severity_rank(alert.severity) < severity_rank(self.min_severity):
            return False
        if self.cooldown > 0:
            key = alert.key()
            now = self._clock()
            with self._lock:
                until = self._next_eligible.get(key)
                if until is not None and now < until:
                    return False
                self._next_eligible[key] = now + self.cooldown
        return True


# ──────────────────────────────────────────────
# Responder pipeline
# ──────────────────────────────────────────────
class ResponderPipeline:
    def __init__(self, responders: Optional[List[Any]] = None):
        self.responders: List[Any] = list(responders or [])

    def add(self, responder: Any) -> None:
        if responder is not None:
            self.responders.append(responder)

    def run(self, alerts: List[Alert]) -> List[Exception]:
        """Every responder sees every alert; failures are collected, never raised."""
        errs: List[Exception] = []
        for a in alerts:
            for r in self.responders:
                try:
                    r.handle(a)
                except Exception as e:
                    errs.append(ResponderError(r.name(), e))
        return errs


class ResponseRouter:
    def __init__(self, policy: Optional[PolicyEngine] = None,
                 pipeline: Optional[ResponderPipeline] = None,
                 on_dropped: Optional[Callable[[Alert], None]] = None):
        self.policy = policy
        self.pipeline = pipeline
        self.on_dropped = on_dropped

    def run(self, alerts: List[Alert]) -> List[Exception]:
        accepted: List[Alert] = []
        for a in alerts:
            if self.policy is None or self.policy.should_respond(a):
                accepted.append(a)
            elif self.on_dropped is not None:
                self.on_dropped(a)
        if not accepted:
            return []
        if self.pipeline is None:
            return [ConfigurationError(
                f"response router: pipeline is not configured ({len(accepted)} accepted alerts undelivered)")]
        return self.pipeline.run(accepted)


# ──────────────────────────────────────────────
# Responders
# ──────────────────────────────────────────────
class LogResponder:
    """One JSON object per line to a text stream."""
    def __init__(self, out: Optional[IO[str]] = None):
        self.out = out if out is not None else sys.stdout

    def name(self) -> str:
        return "log"

    def handle(self, alert: Alert) -> None:
        if self.out is None:
            raise ConfigurationError("log responder: writer is not set")
        self.out.write(json.dumps(alert.to_dict(), default=str) + "\n")
        self.out.flush()


class AlertFileResponder:
    def __init__(self, path: str, max_bytes: int = 0):
        self._writer = RotatingJSONLWriter(path, max_bytes)

    @property
    def path(self):
        return self._writer.path

    def name(self) -> str:
        return "alert_file"

    def handle(self, alert: Alert) -> None:
        self._writer.write(alert.to_dict())

    def close(self) -> None:
        self._writer.close()


def _coerce_pid(v: Any) -> Optional[int]:
    if isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    return None


def extract_alert_pids(evidence: Optional[Dict[str, Any]]) -> List[int]:
    """Reads "pid" (scalar) and "pids" (list) from alert evidence."""
    if not evidence:
        return []
    out: List[int] = []
    pid = _coerce_pid(evidence.get("pid"))
    if pid is not None:
        out.append(pid)
    raw = evidence.get("pids")
    if isinstance(raw, (list, tuple)):
        for v in raw:
            pid = _coerce_pid(v)
            if pid is not None:
                out.append(pid)
    return out


def _psutil_kill(pid: int) -> None:
    psutil.Process(pid).kill()


class ProcessKillerResponder:
    """
    Terminates processes named in alert evidence. Dry-run unless built with
    dry_run=False; dry-run still extracts and logs the PIDs.
    """
    def __init__(self, dry_run: bool = True, kill_fn: Optional[Callable[[int], None]] = None):
        self.dry_run = dry_run
        self.kill_fn = kill_fn or _psutil_kill

    def name(self) -> str:
        return "process_kill"

    def handle(self, alert: Alert) -> None:
        pids = extract_alert_pids(alert.evidence)
        if not pids:
            raise ValueError(f"no pid in alert evidence (rule {alert.rule_id})")
        for pid in pids:
            if self.dry_run:
                log.info("dry-run: would kill pid %d for alert %s (%s)", pid, alert.id, alert.rule_id)
                continue
            try:
                self.kill_fn(pid)
            except psutil.NoSuchProcess as e:
                raise ProcessLookupError(f"kill process {pid}: no such process") from e
            except psutil.AccessDenied as e:
                raise PermissionError(f"kill process {pid}: access denied") from e
            log.warning("killed pid %d for alert %s (%s)", pid, alert.id, alert.rule_id)
