"""Error taxonomy shared by every component."""

from __future__ import annotations


class SniperError(Exception):
    """Base class for all errors raised by the sniper."""


class TransportError(SniperError):
    """Network failure, timeout, HTTP 429 or 5xx. Retried on the next cycle."""

    def __init__(self, message: str, *, source: str = "", status: int = 0) -> None:
        super().__init__(message)
        self.source = source
        self.status = status


class SecurityCheckError(TransportError):
    """Security service unreachable or returned an unusable response."""


class DiscoveryError(TransportError):
    """Every configured discovery source failed in one poll."""


class ValidationError(SniperError):
    """Malformed or missing response fields. The affected item is skipped."""


class ExecutionError(SniperError):
    pass


class ExecutionRejected(ExecutionError):
    """Non-retryable execution failure: no route, failed simulation, on-chain error."""


class PositionExistsError(SniperError):
    pass


class PositionNotFoundError(SniperError):
    pass


class ConfigError(SniperError):
    """Invalid settings. Fatal for the process."""
