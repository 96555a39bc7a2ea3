# app/core/exceptions.py
"""
Error taxonomy for the lead automation queue.

Caller-facing errors subclass the builtin exception the routers already
translate (LookupError -> 404, PermissionError -> 403, ValueError -> 400), so
they surface synchronously and are never partially applied.

DispatchFailure / DispatchTimeout never reach a caller: the dispatcher turns
them into retry decisions and audit entries.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class NotFound(QueueError, LookupError):
    """Unknown lead or project."""


class Forbidden(QueueError, PermissionError):
    """Lead belongs to a different project than the caller's."""


class InvalidArgument(QueueError, ValueError):
    """Malformed bulk operation (e.g. mismatched reorder arrays)."""


class ConfigurationError(QueueError, ValueError):
    """QueueSettings outside documented bounds."""


class DispatchFailure(QueueError):
    """Transient send failure, eligible for retry."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DispatchTimeout(DispatchFailure):
    def __init__(self, reason: str = "timeout"):
        super().__init__(reason)
