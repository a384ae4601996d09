from __future__ import annotations


class FlagstoneError(Exception):
    """
    Base class of all errors raised by flagstone. `code` is the short string
    that ends up in EvaluationResult.error when the error is absorbed at the
    evaluation boundary.
    """

    code: str = "ERROR"


class ConfigurationError(FlagstoneError, ValueError):
    """
    Malformed rule, unknown reference, bad rollout or segment cycle. Raised at
    write time and re-checked defensively during evaluation.
    """

    code = "CONFIGURATION_ERROR"


class SegmentCycleError(ConfigurationError):
    def __init__(self, path: list[str]):
        super().__init__(f"circular segment reference: {' -> '.join(path)}")
        self.path = path


class NotFoundError(FlagstoneError, LookupError):
    code = "NOT_FOUND"


class TransientCacheError(FlagstoneError):
    """
    A refresh, poll or stream operation failed. Triggers a retry and never
    reaches evaluation callers.
    """

    code = "TRANSIENT_CACHE_ERROR"


class InvalidContextError(FlagstoneError, ValueError):
    """
    The caller passed a context without a usable key. This is the one failure
    that is reported to the caller instead of being masked.
    """

    code = "INVALID_CONTEXT"
