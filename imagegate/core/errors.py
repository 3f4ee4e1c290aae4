# ---------------------------------
# TYPED EXCEPTIONS
# ---------------------------------
from __future__ import annotations


class ImageGateError(Exception):
    """Base class for all service errors."""


class NotFoundError(ImageGateError):
    """Raised when a request id is unknown."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Request '{request_id}' not found")


class InvalidStateError(ImageGateError):
    """Raised when a transition is attempted from a disallowed status."""

    def __init__(self, request_id: str, current: str, target: str):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(
            f"Request '{request_id}' cannot move from '{current}' to '{target}'"
        )


class NotAuthorizedError(ImageGateError):
    """Raised when a user who is not an approver tries to decide a request."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User '{user_id}' is not allowed to approve or reject requests")


class ExternalToolError(ImageGateError):
    """Raised when the external build tool exits abnormally or is missing."""

    def __init__(self, message: str, *, raw_stderr: str = "", returncode: int | None = None):
        self.message = message
        self.raw_stderr = raw_stderr
        self.returncode = returncode
        super().__init__(message)


class CommandTimeoutError(ExternalToolError):
    """Raised when a bounded external call exceeds its budget."""


class ParseError(ImageGateError):
    """Raised when tool output does not match the expected structure."""
