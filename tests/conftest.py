from __future__ import annotations
from datetime import datetime, timezone
from typing import List

import pytest

from hostsentry.models import Alert, TelemetryMeta, TelemetrySnapshot


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class StubCapturer:
    """Returns the queued snapshots in order; raises the queued exceptions."""
    def __init__(self, label: str = "STUB", snapshot: TelemetrySnapshot = None,
                 capture_error: Exception = None, info_error: Exception = None):
        self.label = label
        self.snapshot = snapshot or TelemetrySnapshot(summary=f"{label}Snapshot", metrics={"x": 1.0})
        self.capture_error = capture_error
        self.info_error = info_error
        self.captures = 0

    def name(self) -> str:
        return self.label

    def capture(self) -> None:
        self.captures += 1
        if self.capture_error is not None:
            raise self.capture_error

    def get_info(self) -> TelemetrySnapshot:
        if self.info_error is not None:
            raise self.info_error
        return self.snapshot


class RecordingSink:
    def __init__(self, label: str = "recording", fail: bool = False):
        self.label = label
        self.fail = fail
        self.seen: List[TelemetrySnapshot] = []

    def name(self) -> str:
        return self.label

    def consume(self, snapshot: TelemetrySnapshot) -> None:
        if self.fail:
            raise IOError("disk full")
        self.seen.append(snapshot)


class StubResponder:
    def __init__(self, label: str = "stub", err: Exception = None):
        self.label = label
        self.err = err
        self.handled: List[Alert] = []

    def name(self) -> str:
        return self.label

    def handle(self, alert: Alert) -> None:
        self.handled.append(alert)
        if self.err is not None:
            raise self.err


def at(second: int) -> datetime:
    return datetime(2024, 1, 1, 0, 0, second, tzinfo=timezone.utc)


def cpu_snapshot(pct: float = 95.0) -> TelemetrySnapshot:
    return TelemetrySnapshot(
        summary="CPUSnapshot",
        metrics={"cpu.total_pct": pct},
        meta=TelemetryMeta(host="h", session="s", capturer="CPU",
                           captured_at=datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
