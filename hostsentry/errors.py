from __future__ import annotations


class HostSentryError(Exception):
    pass


class ConfigurationError(HostSentryError):
    """The pipeline cannot run at all with the given wiring."""


class CaptureError(HostSentryError):
    def __init__(self, capturer: str, stage: str, cause: BaseException):
        super().__init__(f"[{capturer}] {stage} error: {cause}")
        self.capturer = capturer
        self.stage = stage
        self.cause = cause


class SinkError(HostSentryError):
    def __init__(self, sink: str, cause: BaseException):
        super().__init__(f"sink {sink}: {cause}")
        self.sink = sink
        self.cause = cause


class ResponderError(HostSentryError):
    def __init__(self, responder: str, cause: BaseException):
        super().__init__(f"{responder}: {cause}")
        self.responder = responder
        self.cause = cause


class RuleError(HostSentryError):
    pass
