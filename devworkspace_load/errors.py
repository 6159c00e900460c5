"""
Error types raised by the DevWorkspace load test.
"""


class LoadTestError(Exception):
    """Base class for all load test failures."""


class ConfigError(LoadTestError):
    """Missing or invalid startup configuration. Aborts the run before any VU starts."""


class TransportError(LoadTestError):
    """An API call failed at the transport level or returned an unexpected status."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ParseError(LoadTestError):
    """A response body could not be decoded into the expected structure."""


class ReadinessTimeoutError(LoadTestError):
    """The readiness attempt budget was exhausted without a terminal phase."""


class InvalidQuantity(LoadTestError, ValueError):
    """A Kubernetes quantity string could not be parsed."""
