from __future__ import annotations
import threading
import time

import pytest

from conftest import RecordingSink, StubCapturer, StubResponder

from hostsentry.config import AGENT_VERSION
from hostsentry.correlate import AlertHistory
from hostsentry.detection import Detector, RateLimiter
from hostsentry.errors import CaptureError, ConfigurationError, SinkError
from hostsentry.models import Alert, CapturerSchedule, RuleSpec, TelemetryMeta, TelemetrySnapshot
from hostsentry.response import PolicyEngine, ResponseRouter
from hostsentry.scheduler import AlertPipeline, CaptureScheduler


def always_alert(severity="high", count=1):
    return RuleSpec(id="always", severity=severity,
                    evaluate=lambda s: [Alert(dedup_key="k") for _ in range(count)])


class WarmingCapturer(StubCapturer):
    def __init__(self):
        super().__init__("PROC")
        self.warm = False

    def is_warm(self):
        return self.warm


class VerboseCapturer(StubCapturer):
    def get_verbose_info(self):
        raise RuntimeError("no detail")


def test_validate_rejects_bad_schedules():
    with pytest.raises(ConfigurationError):
        CaptureScheduler([]).run(threading.Event())
    with pytest.raises(ConfigurationError):
        CaptureScheduler([CapturerSchedule(None, 1)]).run_once()


def test_interval_fallbacks():
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 0)], default_interval=2.0)
    assert s.interval_for(s.schedules[0]) == 2.0
    assert s.interval_for(CapturerSchedule(StubCapturer(), 0.5)) == 0.5
    s.default_interval = 0
    assert s.interval_for(s.schedules[0]) == 5.0


def test_full_queue_processes_inline_and_counts_drop():
    sink = RecordingSink()
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)], queue_capacity=2)
    s.add_sink(sink)
    snaps = [TelemetrySnapshot(summary=f"s{i}", meta=TelemetryMeta(capturer="STUB")) for i in range(3)]
    for snap in snaps:
        s._handoff(snap)

    assert s.queue_stats() == (2, 2, 1)
    assert s.processed == 1
    assert [x.summary for x in sink.seen] == ["s2"]

    halt = threading.Event()
    halt.set()
    s._drain(halt)
    assert s.queue_stats() == (0, 2, 1)
    assert s.processed == 3
    assert sorted(x.summary for x in sink.seen) == ["s0", "s1", "s2"]


def test_queue_capacity_defaults():
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)], queue_capacity=0)
    assert s.queue_stats() == (0, 64, 0)


def test_stamp_fills_only_missing_meta():
    cap = StubCapturer("DISK", TelemetrySnapshot(
        summary="d", meta=TelemetryMeta(host="custom-host", capturer="DISK2")))
    s = CaptureScheduler([CapturerSchedule(cap, 7)])
    snap = s._capture(cap, 7.0)
    m = snap.meta
    assert m.host == "custom-host"
    assert m.capturer == "DISK2"
    assert m.session == s.session_id
    assert m.agent_version == AGENT_VERSION
    assert m.interval_sec == 7.0
    assert m.captured_at is not None
    assert m.os and m.timezone
    # the capturer's own snapshot is left alone
    assert cap.snapshot.meta.session == ""


def test_capture_errors_are_recorded_and_run_continues():
    good = StubCapturer("OK")
    s = CaptureScheduler([
        CapturerSchedule(StubCapturer("A", capture_error=RuntimeError("no perms")), 1),
        CapturerSchedule(StubCapturer("B", info_error=ValueError("bad data")), 1),
        CapturerSchedule(good, 1),
    ])
    first = s.run_once()
    errs = s.errors
    assert [(e.capturer, e.stage) for e in errs] == [("A", "capture"), ("B", "getinfo")]
    assert all(isinstance(e, CaptureError) for e in errs)
    assert first is errs[0]
    assert s.first_error() is errs[0]
    assert s.processed == 1


def test_sink_stats_track_success_and_failure():
    bad = RecordingSink("bad", fail=True)
    good = RecordingSink("good")
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)])
    s.add_sink(bad)
    s.add_sink(good)
    s.run_once()

    stats = s.sink_stats()
    assert (stats["good"].success, stats["good"].failure) == (1, 0)
    assert (stats["bad"].success, stats["bad"].failure) == (0, 1)
    assert isinstance(stats["bad"].last_error, SinkError)
    assert isinstance(s.first_error(), SinkError)

    bad.fail = False
    s.run_once()
    stats = s.sink_stats()
    assert (stats["bad"].success, stats["bad"].failure) == (1, 1)
    assert stats["bad"].last_error is None


def test_warming_up_is_flagged():
    cap = WarmingCapturer()
    s = CaptureScheduler([CapturerSchedule(cap, 1)])
    assert s._capture(cap, 1.0).fields["warming_up"] is True
    cap.warm = True
    assert "warming_up" not in s._capture(cap, 1.0).fields
    assert "warming_up" not in s._capture(StubCapturer(), 1.0).fields


def test_verbose_failure_does_not_drop_snapshot():
    cap = VerboseCapturer("V")
    s = CaptureScheduler([CapturerSchedule(cap, 1)], verbose=True)
    s.run_once()
    assert s.processed == 1
    assert s.errors[0].stage == "getverboseinfo"


def test_responders_follow_router():
    first, second = StubResponder("first"), StubResponder("second")
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)],
                         pipeline=AlertPipeline(Detector([always_alert("critical")])))
    s.add_responder(first)
    router = ResponseRouter(policy=PolicyEngine(min_severity="high"))
    s.set_router(router)
    s.add_responder(second)
    s.run_once()
    assert router.pipeline is s.pipeline.responder
    assert len(first.handled) == 1
    assert len(second.handled) == 1


def test_rate_limited_alerts_are_recorded_but_not_delivered():
    resp = StubResponder()
    history = AlertHistory()
    det = Detector([always_alert(count=3)], limiter=RateLimiter(60, 1))
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)], pipeline=AlertPipeline(det))
    s.add_responder(resp)
    s.add_alert_listener(history.extend)
    s.run_once()
    assert len(resp.handled) == 1
    kept = history.snapshot()
    assert len(kept) == 3
    assert [a.rate_limited for a in kept] == [False, True, True]


def test_responder_errors_are_recorded():
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)],
                         pipeline=AlertPipeline(Detector([always_alert()])))
    s.add_responder(StubResponder("broken", err=RuntimeError("down")))
    s.run_once()
    assert str(s.first_error()) == "broken: down"


def test_run_until_stopped():
    cap = StubCapturer("FAST")
    sink = RecordingSink()
    s = CaptureScheduler([CapturerSchedule(cap, 0.02)])
    s.add_sink(sink)
    stop = threading.Event()
    timer = threading.Timer(0.3, stop.set)
    timer.start()
    assert s.run(stop) is None
    timer.join()
    assert cap.captures >= 2
    assert s.processed == cap.captures
    assert s.queue_stats()[0] == 0
    assert len(sink.seen) == s.processed
    assert s.errors == []


def test_run_reraises_fatal_thread_error():
    def explode(alerts):
        raise RuntimeError("listener crashed")

    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 0.02)],
                         pipeline=AlertPipeline(Detector([always_alert()])))
    s.add_alert_listener(explode)
    with pytest.raises(RuntimeError, match="listener crashed"):
        s.run(threading.Event())


class SlowSecondCapture(StubCapturer):
    """The second capture is still running when the stop signal arrives."""
    def __init__(self, stop):
        super().__init__("SLOW")
        self.stop = stop

    def capture(self):
        super().capture()
        if self.captures == 2:
            self.stop.wait(5)
            time.sleep(0.3)


def test_capture_in_flight_at_shutdown_is_processed():
    stop = threading.Event()
    cap = SlowSecondCapture(stop)
    sink = RecordingSink()
    s = CaptureScheduler([CapturerSchedule(cap, 0.02)])
    s.add_sink(sink)
    timer = threading.Timer(0.1, stop.set)
    timer.start()
    s.run(stop)
    timer.join()
    assert cap.captures == 2
    assert s.processed == 2
    assert len(sink.seen) == 2
    assert s.queue_stats()[0] == 0


def test_run_returns_first_recorded_error():
    s = CaptureScheduler([
        CapturerSchedule(StubCapturer("A", capture_error=RuntimeError("boom")), 0.02),
        CapturerSchedule(StubCapturer("OK"), 0.02),
    ])
    stop = threading.Event()
    timer = threading.Timer(0.1, stop.set)
    timer.start()
    err = s.run(stop)
    timer.join()
    assert isinstance(err, CaptureError)
    assert err is s.first_error()
    assert err.capturer == "A"


class ClosingSink(RecordingSink):
    def __init__(self, label="closing"):
        super().__init__(label)
        self.closed = 0

    def close(self):
        self.closed += 1


class ClosingResponder(StubResponder):
    def __init__(self, label="closing"):
        super().__init__(label)
        self.closed = 0

    def close(self):
        self.closed += 1


def test_close_reaches_sinks_and_responders_once():
    sink = ClosingSink()
    resp = ClosingResponder()
    s = CaptureScheduler([CapturerSchedule(StubCapturer(), 1)])
    s.add_sink(sink)
    s.add_sink(RecordingSink("no-close"))
    s.add_responder(resp)
    s.add_responder(StubResponder("plain"))
    # the router takes over the same responder pipeline
    s.set_router(ResponseRouter(policy=PolicyEngine()))
    s.close()
    assert sink.closed == 1
    assert resp.closed == 1
