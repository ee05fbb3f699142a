from __future__ import annotations
import itertools
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .models import Alert, RuleSpec, TelemetrySnapshot, SEVERITY_INFO, merge_meta

log = logging.getLogger(__name__)

_id_seq = itertools.count(1)


def default_alert_id(rule_id: str) -> str:
    return f"{rule_id}-{time.time_ns()}-{next(_id_seq)}"


class AlertDeduper:
    """
    Suppresses alerts whose key was passed less than `window` seconds ago.
    Every passed alert restarts its key's window from the current time.
    """
    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._until: Dict[str, float] = {}

    def filter(self, alerts: List[Alert]) -> List[Alert]:
        if self.window <= 0:
            return alerts
        now = self._clock()
        out: List[Alert] = []
        with self._lock:
            for a in alerts:
                key = a.key()
                until = self._until.get(key)
                if until is not None and now < until:
                    continue
                out.append(a)
                self._until[key] = now + self.window
            # forget expired keys so the map tracks only live suppressions
            for key in [k for k, u in self._until.items() if u <= now]:
                del self._until[key]
        return out


class RateLimiter:
    """At most `burst` alerts per key per `window` seconds."""
    def __init__(self, window: float, burst: int, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._count: Dict[str, int] = {}
        self._reset: Dict[str, float] = {}

    def filter(self, alerts: List[Alert]) -> List[Alert]:
        if self.window <= 0 or self.burst <= 0:
            return alerts
        now = self._clock()
        out: List[Alert] = []
        with self._lock:
            for a in alerts:
                key = a.key()
                reset_at = self._reset.get(key)
                if reset_at is None or now >= reset_at:
                    self._count[key] = 0
                    self._reset[key] = now + self.window
                if self._count[key] >= self.burst:
                    a.rate_limited = True
                    continue
                self._count[key] += 1
                out.append(a)
        return out


class Detector:
    """
    Runs rules against one snapshot, enriches what they return, then applies
    dedup and rate limiting, in that order.
    """
    def __init__(self, rules: List[RuleSpec],
                 deduper: Optional[AlertDeduper] = None,
                 limiter: Optional[RateLimiter] = None,
                 id_source: Optional[Callable[[], str]] = None):
        self.rules = list(rules)
        self.deduper = deduper
        self.limiter = limiter
        self.id_source = id_source

    def evaluate(self, snapshot: TelemetrySnapshot, include_limited: bool = False) -> List[Alert]:
        """
        Returns the alerts to deliver. With include_limited=True the alerts the
        rate limiter suppressed are kept in the batch, flagged rate_limited,
        for callers that retain an audit trail.
        """
        out: List[Alert] = []
        capturer = (snapshot.meta.capturer or "").lower()
        for rule in self.rules:
            if rule.evaluate is None:
                continue
            if rule.source and capturer and rule.source.lower() != capturer:
                continue
            try:
                raw = rule.evaluate(snapshot) or []
            except Exception:
                log.exception("rule %s failed on %s snapshot", rule.id, snapshot.meta.capturer or "?")
                continue
            for a in raw:
                out.append(self.enrich(a, snapshot, rule))

        if self.deduper is not None:
            out = self.deduper.filter(out)
        if self.limiter is not None:
            passed = self.limiter.filter(out)
            if not include_limited:
                return passed
        return out

    def enrich(self, a: Alert, snapshot: TelemetrySnapshot, rule: RuleSpec) -> Alert:
        """Fills only what the rule left empty."""
        if not a.rule_id:
            a.rule_id = rule.id or "unknown_rule"
        if not a.id:
            a.id = self.id_source() if self.id_source else default_alert_id(a.rule_id)
        if a.at is None:
            a.at = snapshot.meta.captured_at or datetime.now(timezone.utc)
        a.meta = merge_meta(a.meta, snapshot.meta)
        if not a.source:
            a.source = a.meta.capturer or rule.source or "unknown"
        if not a.severity:
            a.severity = rule.severity or SEVERITY_INFO
        if not a.title:
            a.title = rule.title or a.rule_id
        if not a.evidence and rule.tags:
            a.evidence = {"tags": list(rule.tags)}
        if not a.dedup_key:
            a.dedup_key = rule.dedup_key or f"{a.rule_id}|{a.source}|{a.meta.session}"
        return a
