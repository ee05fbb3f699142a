from __future__ import annotations
import getpass
import logging
import platform
import queue
import socket
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import AGENT_VERSION
from .detection import Detector
from .errors import CaptureError, ConfigurationError, SinkError
from .models import Alert, CapturerSchedule, TelemetryMeta, TelemetrySnapshot
from .response import ResponderPipeline, ResponseRouter

log = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 64
MAX_RECORDED_ERRORS = 1000


def new_session_id() -> str:
    try:
        user = getpass.getuser()
    except Exception:
        user = "unknown"
    return f"{user}-{time.time_ns()}"


def local_timezone() -> str:
    return datetime.now().astimezone().strftime("%z")


def _first(own, fallback):
    return own if own else fallback


class AlertPipeline:
    """Detection followed by response; rate-limited alerts are kept for audit but never delivered."""
    def __init__(self, detector: Optional[Detector] = None,
                 router: Optional[ResponseRouter] = None,
                 responder: Optional[ResponderPipeline] = None):
        self.detector = detector
        self.router = router
        self.responder = responder

    def process(self, snapshot: TelemetrySnapshot) -> Tuple[List[Alert], List[Exception]]:
        if self.detector is None:
            return [], []
        alerts = self.detector.evaluate(snapshot, include_limited=True)
        deliver = [a for a in alerts if not a.rate_limited]
        if not deliver:
            return alerts, []
        if self.router is not None:
            return alerts, self.router.run(deliver)
        if self.responder is not None:
            return alerts, self.responder.run(deliver)
        return alerts, []


@dataclass
class SinkStat:
    success: int = 0
    failure: int = 0
    last_error: Optional[Exception] = None


class CaptureScheduler:
    """
    One thread per CapturerSchedule, all feeding a single bounded queue that a
    single processing thread drains. When the queue is full the capturing
    thread processes the snapshot itself, so nothing is dropped; the drop
    counter records how often that happened.
    """
    def __init__(self, schedules: List[CapturerSchedule],
                 default_interval: float = 3.0,
                 queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
                 pipeline: Optional[AlertPipeline] = None,
                 verbose: bool = False):
        self.schedules = list(schedules)
        self.default_interval = default_interval
        self.capacity = queue_capacity if queue_capacity > 0 else DEFAULT_QUEUE_CAPACITY
        self.pipeline = pipeline or AlertPipeline()
        self.verbose = verbose
        self.sinks: List[Any] = []
        self.alert_listeners: List[Callable[[List[Alert]], None]] = []

        self.host = socket.gethostname()
        self.timezone = local_timezone()
        self.session_id = new_session_id()

        self._queue: "queue.Queue[TelemetrySnapshot]" = queue.Queue(maxsize=self.capacity)
        self._process_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._drops = 0
        self._processed = 0
        self._errors: List[Exception] = []
        self._fatal: Optional[BaseException] = None
        self._sink_stats: Dict[str, SinkStat] = {}

    # ── wiring ────────────────────────────────
    def add_sink(self, sink: Any) -> None:
        if sink is not None:
            self.sinks.append(sink)

    def add_responder(self, responder: Any) -> None:
        if responder is None:
            return
        p = self.pipeline
        if p.router is not None:
            if p.router.pipeline is None:
                p.router.pipeline = ResponderPipeline()
            p.router.pipeline.add(responder)
            return
        if p.responder is None:
            p.responder = ResponderPipeline()
        p.responder.add(responder)

    def set_router(self, router: ResponseRouter) -> None:
        """Routes through a policy; responders added earlier move behind it."""
        if router.pipeline is None and self.pipeline.responder is not None:
            router.pipeline = self.pipeline.responder
        self.pipeline.router = router

    def add_alert_listener(self, fn: Callable[[List[Alert]], None]) -> None:
        self.alert_listeners.append(fn)

    # ── observability ─────────────────────────
    def queue_stats(self) -> Tuple[int, int, int]:
        """(pending, capacity, drops)"""
        with self._state_lock:
            return self._queue.qsize(), self.capacity, self._drops

    def sink_stats(self) -> Dict[str, SinkStat]:
        with self._state_lock:
            return {k: replace(v) for k, v in self._sink_stats.items()}

    @property
    def errors(self) -> List[Exception]:
        with self._state_lock:
            return list(self._errors)

    def first_error(self) -> Optional[Exception]:
        with self._state_lock:
            return self._errors[0] if self._errors else None

    @property
    def processed(self) -> int:
        with self._state_lock:
            return self._processed

    # ── run loop ──────────────────────────────
    def validate(self) -> None:
        if not self.schedules:
            raise ConfigurationError("capture scheduler: schedules is empty")
        for i, sc in enumerate(self.schedules):
            if sc is None or sc.capturer is None:
                raise ConfigurationError(f"capture scheduler: schedule {i} capturer is missing")

    def interval_for(self, sc: CapturerSchedule) -> float:
        if sc.interval and sc.interval > 0:
            return sc.interval
        if self.default_interval and self.default_interval > 0:
            return self.default_interval
        return 5.0

    def run(self, stop: threading.Event) -> Optional[Exception]:
        """
        Blocks until `stop` is set and every thread has finished, then returns
        the first recorded per-tick error (None when there was none).
        Configuration problems raise before any thread starts; a crashed
        scheduling or processing thread is re-raised here.
        """
        self.validate()
        halt = threading.Event()

        # halt also fires on a fatal error without touching the caller's event
        def watch_stop():
            while not halt.is_set():
                if stop.wait(0.2):
                    halt.set()

        threading.Thread(target=watch_stop, name="hostsentry-stop", daemon=True).start()

        # set only after every producer has returned, so the final drain sees
        # the last in-flight capture
        drained = threading.Event()
        worker = threading.Thread(target=self._guard, args=(halt, self._drain, drained),
                                  name="hostsentry-process", daemon=True)
        worker.start()

        threads = []
        for sc in self.schedules:
            t = threading.Thread(target=self._guard, args=(halt, self._run_schedule, halt, sc),
                                 name=f"hostsentry-{self._name(sc.capturer)}", daemon=True)
            t.start()
            threads.append(t)
        log.info("scheduler started: %d schedules, queue capacity %d", len(threads), self.capacity)

        for t in threads:
            t.join()
        drained.set()
        worker.join()
        log.info("scheduler stopped: processed=%d drops=%d errors=%d",
                 self.processed, self._drops, len(self.errors))
        if self._fatal is not None:
            raise self._fatal
        return self.first_error()

    def run_once(self) -> Optional[Exception]:
        """One capture of every schedule, processed inline; returns the first recorded error."""
        self.validate()
        for sc in self.schedules:
            snap = self._capture(sc.capturer, self.interval_for(sc))
            if snap is not None:
                self._process(snap)
        return self.first_error()

    def close(self) -> None:
        """Closes every sink and responder that holds a file."""
        targets = list(self.sinks)
        seen = set()
        router = self.pipeline.router
        for p in (self.pipeline.responder, router.pipeline if router else None):
            if p is None or id(p) in seen:
                continue
            seen.add(id(p))
            targets.extend(p.responders)
        for t in targets:
            close = getattr(t, "close", None)
            if close is None:
                continue
            try:
                close()
            except OSError as e:
                log.warning("close %s: %s", self._name(t), e)

    def _guard(self, halt: threading.Event, fn, *args) -> None:
        try:
            fn(*args)
        except BaseException as e:
            log.exception("fatal error in %s", threading.current_thread().name)
            with self._state_lock:
                if self._fatal is None:
                    self._fatal = e
            halt.set()

    def _run_schedule(self, halt: threading.Event, sc: CapturerSchedule) -> None:
        interval = self.interval_for(sc)
        next_at = time.monotonic()
        while True:
            snap = self._capture(sc.capturer, interval)
            if snap is not None:
                self._handoff(snap)
            next_at += interval
            now = time.monotonic()
            if next_at <= now:
                # tick overran; skip missed ticks like a ticker does
                next_at = now + interval - ((now - next_at) % interval)
            if halt.wait(next_at - now):
                return

    def _drain(self, done: threading.Event) -> None:
        while not done.is_set():
            try:
                snap = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._process(snap)
        # no producer is left; empty the queue
        while True:
            try:
                snap = self._queue.get_nowait()
            except queue.Empty:
                return
            self._process(snap)

    # ── per tick ──────────────────────────────
    @staticmethod
    def _name(obj: Any) -> str:
        return obj.name() if hasattr(obj, "name") else type(obj).__name__

    def _record(self, err: Exception) -> None:
        with self._state_lock:
            if len(self._errors) < MAX_RECORDED_ERRORS:
                self._errors.append(err)

    def _capture(self, capturer: Any, interval: float) -> Optional[TelemetrySnapshot]:
        name = self._name(capturer)
        try:
            capturer.capture()
        except Exception as e:
            err = CaptureError(name, "capture", e)
            log.warning("%s", err)
            self._record(err)
            return None
        try:
            snap = capturer.get_info()
        except Exception as e:
            err = CaptureError(name, "getinfo", e)
            log.warning("%s", err)
            self._record(err)
            return None

        snap = self._stamp(snap, name, interval)
        is_warm = getattr(capturer, "is_warm", None)
        if is_warm is not None and not is_warm():
            snap = replace(snap, fields={**(snap.fields or {}), "warming_up": True})

        if self.verbose:
            detail = snap.summary
            get_verbose = getattr(capturer, "get_verbose_info", None)
            if get_verbose is not None:
                try:
                    detail = get_verbose()
                except Exception as e:
                    err = CaptureError(name, "getverboseinfo", e)
                    log.warning("%s", err)
                    self._record(err)
            log.info("==== %s (verbose) ====\n%s", name, detail)
        return snap

    def _stamp(self, snap: TelemetrySnapshot, name: str, interval: float) -> TelemetrySnapshot:
        m = snap.meta or TelemetryMeta()
        meta = replace(
            m,
            host=_first(m.host, self.host),
            agent_version=_first(m.agent_version, AGENT_VERSION),
            agent_build=_first(m.agent_build, AGENT_VERSION),
            session=_first(m.session, self.session_id),
            timezone=_first(m.timezone, self.timezone),
            os=_first(m.os, platform.system().lower()),
            arch=_first(m.arch, platform.machine().lower()),
            capturer=_first(m.capturer, name),
            interval_sec=_first(m.interval_sec, interval),
            captured_at=_first(m.captured_at, datetime.now(timezone.utc)),
        )
        return replace(snap, meta=meta, metrics=dict(snap.metrics or {}), fields=dict(snap.fields or {}))

    def _handoff(self, snap: TelemetrySnapshot) -> None:
        try:
            self._queue.put_nowait(snap)
            return
        except queue.Full:
            pass
        with self._state_lock:
            self._drops += 1
        log.debug("queue full; processing %s snapshot inline", snap.meta.capturer)
        self._process(snap)

    def _process(self, snap: TelemetrySnapshot) -> None:
        with self._process_lock:
            for sink in self.sinks:
                self._consume(sink, snap)

            alerts, errs = self.pipeline.process(snap)
            for e in errs:
                log.warning("[%s] responder error: %s", snap.meta.capturer, e)
                self._record(e)
            if alerts:
                for fn in self.alert_listeners:
                    fn(alerts)
            with self._state_lock:
                self._processed += 1
            log.debug("[%s] %s (%d alerts)", snap.meta.capturer, snap.summary, len(alerts))

    def _consume(self, sink: Any, snap: TelemetrySnapshot) -> None:
        name = self._name(sink)
        try:
            sink.consume(snap)
        except Exception as e:
            err = SinkError(name, e)
            log.warning("[%s] %s", snap.meta.capturer, err)
            with self._state_lock:
                stat = self._sink_stats.setdefault(name, SinkStat())
                stat.failure += 1
                stat.last_error = err
            self._record(err)
            return
        with self._state_lock:
            stat = self._sink_stats.setdefault(name, SinkStat())
            stat.success += 1
            stat.last_error = None
