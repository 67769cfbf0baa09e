from __future__ import annotations


class EngineError(Exception):
    """Base error carrying a machine-readable kind and an HTTP-style status."""

    kind = "engine_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotFound(EngineError):
    kind = "not_found"
    status_code = 404


class InvalidInput(EngineError):
    kind = "invalid_input"
    status_code = 400


class ClockInconsistency(EngineError):
    """A computed expiry landed at or before the admission instant."""

    kind = "clock_inconsistency"
    status_code = 422


class UpstreamUnavailable(EngineError):
    kind = "upstream_unavailable"
    status_code = 503
