from __future__ import annotations
import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from .capturers import build_capturers, default_interval_for
from .config import AgentConfig, load_config
from .correlate import AlertHistory
from .detection import AlertDeduper, Detector, RateLimiter
from .errors import HostSentryError
from .ioc import load_ioc_config, rule_ioc_match
from .logutil import setup_logging
from .models import CapturerSchedule
from .response import (
    AlertFileResponder, LogResponder, PolicyEngine, ProcessKillerResponder,
    ResponderPipeline, ResponseRouter,
)
from .rules import default_rules, load_rule_definitions
from .scheduler import AlertPipeline, CaptureScheduler
from .sinks import JSONFileSink

log = logging.getLogger(__name__)


class _KillScope:
    """Hands only the configured rules to the process killer."""
    def __init__(self, inner: ProcessKillerResponder, rules: List[str]):
        self.inner = inner
        self.rules = set(rules)

    def name(self) -> str:
        return self.inner.name()

    def handle(self, alert) -> None:
        if self.rules and alert.rule_id not in self.rules:
            return
        self.inner.handle(alert)


def build_detector(cfg: AgentConfig) -> Detector:
    rules = default_rules(cfg.rule_config())
    if cfg.ioc_path:
        rules.append(rule_ioc_match(load_ioc_config(cfg.ioc_path)))
    if cfg.custom_rules_path:
        rules.extend(d.compile() for d in load_rule_definitions(cfg.custom_rules_path))
    return Detector(
        rules,
        deduper=AlertDeduper(cfg.dedup_window_sec) if cfg.dedup_window_sec > 0 else None,
        limiter=RateLimiter(cfg.rate_limit_window_sec, cfg.rate_limit_burst)
        if cfg.rate_limit_window_sec > 0 and cfg.rate_limit_burst > 0 else None,
    )


def build_router(cfg: AgentConfig, pipeline: ResponderPipeline) -> Optional[ResponseRouter]:
    if not (cfg.policy_min_severity or cfg.policy_allow_rules
            or cfg.policy_deny_rules or cfg.policy_cooldown_sec > 0):
        return None
    policy = PolicyEngine(
        min_severity=cfg.policy_min_severity,
        allow_rules=cfg.policy_allow_rules,
        deny_rules=cfg.policy_deny_rules,
        cooldown=cfg.policy_cooldown_sec,
    )
    return ResponseRouter(
        policy=policy,
        pipeline=pipeline,
        on_dropped=lambda a: log.debug("policy dropped %s (%s)", a.id, a.rule_id),
    )


def build_agent(cfg: AgentConfig) -> tuple:
    """Wires capturers, detection, response and history; returns (scheduler, history)."""
    capturers = build_capturers(cfg)
    schedules = [
        CapturerSchedule(c, cfg.intervals.get(c.name(), default_interval_for(c.name())))
        for c in capturers
    ]

    responders = ResponderPipeline()
    if cfg.log_alerts:
        responders.add(LogResponder(sys.stdout))
    if cfg.alert_file_path:
        responders.add(AlertFileResponder(cfg.alert_file_path, cfg.alert_file_max_bytes))
    if cfg.kill_enabled:
        responders.add(_KillScope(ProcessKillerResponder(dry_run=cfg.kill_dry_run), cfg.kill_rules))

    router = build_router(cfg, responders)
    pipeline = AlertPipeline(build_detector(cfg), router=router,
                             responder=None if router else responders)

    scheduler = CaptureScheduler(
        schedules,
        default_interval=cfg.default_interval_sec,
        queue_capacity=cfg.queue_capacity,
        pipeline=pipeline,
        verbose=cfg.verbose,
    )
    if cfg.telemetry_path:
        scheduler.add_sink(JSONFileSink(cfg.telemetry_path, cfg.telemetry_max_bytes))

    history = AlertHistory(
        limit=cfg.history_limit,
        intervals={sc.capturer.name(): scheduler.interval_for(sc) for sc in schedules},
        default_interval=cfg.default_interval_sec,
        cross_source_only=cfg.correlate_cross_source_only,
    )
    scheduler.add_alert_listener(history.extend)
    return scheduler, history


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="hostsentry", description="Host telemetry and alerting agent")
    ap.add_argument("--config", help="path to config JSON (default ~/.hostsentry/config.json)")
    ap.add_argument("--once", action="store_true", help="capture every source once and exit")
    ap.add_argument("--verbose", action="store_true", help="log verbose capturer output")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config)
    if args.verbose:
        cfg.verbose = True
    setup_logging(args.log_level or cfg.log_level, cfg.log_file or None)

    try:
        scheduler, history = build_agent(cfg)
    except HostSentryError as e:
        log.error("%s", e)
        return 2

    try:
        if args.once:
            first = scheduler.run_once()
        else:
            stop = threading.Event()
            for sig in (signal.SIGINT, signal.SIGTERM):
                signal.signal(sig, lambda *_: stop.set())
            first = scheduler.run(stop)
    except HostSentryError as e:
        log.error("%s", e)
        return 2
    finally:
        scheduler.close()

    pending, capacity, drops = scheduler.queue_stats()
    log.info("alerts retained=%d queue=%d/%d drops=%d", len(history), pending, capacity, drops)
    for name, stat in scheduler.sink_stats().items():
        log.info("sink %s: ok=%d failed=%d last_error=%s", name, stat.success, stat.failure, stat.last_error)
    if first is not None:
        log.warning("%d errors recorded; first: %s", len(scheduler.errors), first)
    return 0


if __name__ == "__main__":
    sys.exit(main())
