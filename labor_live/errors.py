"""Exception types shared across the live session engine."""


class LiveSessionError(Exception):
    """Base class for errors raised by labor_live."""


class SessionStateError(LiveSessionError):
    """Raised when an operation is not allowed in the current session state."""


class CaptureError(LiveSessionError):
    """Raised when the microphone or camera cannot be opened."""


class EmbeddingError(LiveSessionError):
    """Raised when a query embedding could not be produced."""


class SearchBackendError(LiveSessionError):
    """Raised when the document search backend fails or is unreachable."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code
