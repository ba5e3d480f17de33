"""Error types raised by prohtds."""

import builtins


class ProhtdsError(Exception):
    """Base class for all prohtds errors."""


class ConfigError(ProhtdsError):
    """Invalid or unparseable configuration."""


class StoreConnectionError(ProhtdsError, builtins.ConnectionError):
    """No etcd endpoint could be reached, or the initial lease could not be set up."""


class LeaseRenewalError(ProhtdsError):
    """The lease could not be renewed too many times in a row."""

    def __init__(self, failures: int, last_error: str):
        self.failures = failures
        self.last_error = last_error
        super().__init__(
            f"lease renewal failed {failures} times in a row: {last_error}"
        )


class DiscoveryError(ProhtdsError):
    """A discovery read failed. Reported to the HTTP caller as a 503."""


class MalformedKeyError(DiscoveryError):
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"malformed service key {key!r}: {reason}")


class MalformedValueError(DiscoveryError):
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"malformed service value at {key!r}: {reason}")


class ListingError(DiscoveryError):
    """The store could not be read."""
