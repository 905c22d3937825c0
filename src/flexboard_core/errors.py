"""Error taxonomy for the cache and metrics core."""


class FlexboardError(Exception):
    """Base class for all core errors."""


class RemoteError(FlexboardError):
    """A remote call did not succeed."""


class TransientNetworkError(RemoteError):
    """Timeout or connection failure talking to the backend."""


class RemoteRejection(RemoteError):
    """The backend refused a request (validation or constraint failure)."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class CacheInvariantViolation(FlexboardError):
    """The cache was used in a way that correct callers never do."""


class DerivedMetricsInputError(FlexboardError):
    """A metrics request named an unknown metric or lacked arguments.

    Bad profile values never raise this; the metric functions clamp them or
    fall back to defaults.
    """
