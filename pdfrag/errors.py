"""Error taxonomy and the reporting channel shared by store and client.

None of these errors is fatal. Components catch them at the call site,
report them on their ``ErrorChannel`` and return an empty result.
"""
from typing import Callable, List
import structlog

logger = structlog.get_logger()


class RagError(Exception):
    """Base class for recoverable pipeline errors."""


class StoreError(RagError):
    """Constraint violation, connection failure or malformed stored vector."""


class NetworkError(RagError):
    """Transport failure, non-2xx status or timeout."""


class ProtocolError(RagError):
    """Unparseable payload or an explicit ``error`` field from the backend."""


class DataError(RagError):
    """Input that cannot be processed (e.g. vector dimension mismatch)."""


ErrorCallback = Callable[[str], None]


class ErrorChannel:
    """Caller-visible sink for recoverable errors.

    Every reported error is logged and then forwarded, as a human-readable
    message, to each connected callback.
    """

    def __init__(self, source: str):
        self.source = source
        self._callbacks: List[ErrorCallback] = []

    def connect(self, callback: ErrorCallback) -> None:
        """Register a callback receiving error messages."""
        self._callbacks.append(callback)

    def disconnect(self, callback: ErrorCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def report(self, error: RagError, **context) -> None:
        """Log an error and notify every connected callback.

        Args:
            error: The recoverable error
            **context: Extra structured fields for the log entry
        """
        message = str(error)
        logger.error(
            f"{self.source}_error",
            error=message,
            error_type=type(error).__name__,
            **context,
        )
        for callback in list(self._callbacks):
            callback(message)
