from __future__ import annotations
import math
import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from .models import Alert

DEFAULT_INTERVAL = 5.0


def _merge_ids(existing: List[str], extra: Iterable[str]) -> List[str]:
    out = list(dict.fromkeys(existing))
    seen = set(out)
    for i in extra:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


def correlate_alerts(alerts: List[Alert],
                     intervals: Optional[Dict[str, float]] = None,
                     default_interval: float = DEFAULT_INTERVAL,
                     cross_source_only: bool = True) -> List[Alert]:
    """
    Links alerts whose active intervals [at - interval(source), at] share at
    least one whole second. Only the `correlated` field is touched and links
    are merged into what is already there, so re-running is a no-op.
    """
    intervals = intervals or {}

    spans: List[Tuple[int, int, Alert]] = []
    max_iv = 0.0
    for a in alerts:
        if not a.id or a.at is None:
            continue
        iv = intervals.get(a.source, 0.0)
        if iv <= 0:
            iv = default_interval
        max_iv = max(max_iv, iv)
        at = a.at.timestamp()
        spans.append((math.floor(at - iv), math.floor(at), a))

    spans.sort(key=lambda s: s[1])
    reach = math.ceil(max_iv)
    related: Dict[str, List[str]] = {}

    for i, (start_i, end_i, a) in enumerate(spans):
        for start_j, end_j, b in spans[i + 1:]:
            # later alerts can only start after end_j - reach
            if end_j > end_i + reach:
                break
            if a.id == b.id:
                continue
            if cross_source_only and a.source == b.source:
                continue
            if start_j <= end_i and start_i <= end_j:
                related.setdefault(a.id, []).append(b.id)
                related.setdefault(b.id, []).append(a.id)

    for _, _, a in spans:
        ids = related.get(a.id)
        if ids:
            a.correlated = _merge_ids(a.correlated, ids)
    return alerts


class AlertHistory:
    """
    Most-recent-N alert ring. Every append re-runs correlation over what is
    retained. Writers are serialized by the lock.
    """
    def __init__(self, limit: int = 500,
                 intervals: Optional[Dict[str, float]] = None,
                 default_interval: float = DEFAULT_INTERVAL,
                 cross_source_only: bool = True):
        self.limit = max(1, limit)
        self.intervals: Dict[str, float] = dict(intervals or {})
        self.default_interval = default_interval
        self.cross_source_only = cross_source_only
        self._lock = threading.Lock()
        self._alerts: Deque[Alert] = deque(maxlen=self.limit)

    def set_interval(self, source: str, seconds: float) -> None:
        with self._lock:
            self.intervals[source] = seconds

    def extend(self, alerts: Iterable[Alert]) -> None:
        with self._lock:
            added = False
            for a in alerts:
                self._alerts.append(a)
                added = True
            if added:
                correlate_alerts(list(self._alerts), self.intervals,
                                 self.default_interval, self.cross_source_only)

    def snapshot(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts)

    def recent(self, n: int) -> List[Alert]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._alerts)[-n:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)
