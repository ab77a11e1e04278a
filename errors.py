from typing import Any, Optional


class ChatError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"


class ValidationError(ChatError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ChatError):
    status_code = 404
    code = "MESSAGE_NOT_FOUND"


class ConflictError(ChatError):
    status_code = 409
    code = "CONFLICT"


class InternalError(ChatError):
    """Unexpected failure. `cause` is kept for server-side logs and debug output only."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal Server Error", code: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, code)
        self.cause = cause
