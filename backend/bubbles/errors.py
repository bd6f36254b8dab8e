"""Exception hierarchy shared by the server and client halves.

Every business-rule failure carries the HTTP status code the REST layer
should answer with, so routers can translate errors without a lookup table.
"""
from fastapi import HTTPException


class BubblesError(Exception):
    """Base exception for Bubbles errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.message)


class ValidationError(BubblesError):
    """Raised when a request violates a message or chat rule."""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class EditWindowExpiredError(ValidationError):
    """Raised when an edit arrives after the edit window has closed."""
    def __init__(self, message_id: str, window_seconds: int):
        self.message_id = message_id
        self.window_seconds = window_seconds
        super().__init__(
            f"Message {message_id} can only be edited within "
            f"{window_seconds // 60} minutes of sending"
        )


class AuthenticationError(BubblesError):
    """Raised when a credential is missing, malformed or expired."""
    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message, status_code=401)


class NotAMemberError(BubblesError):
    """Raised when a user acts on a chat they are not an active member of."""
    def __init__(self, chat_id: str, user_id: str):
        self.chat_id = chat_id
        self.user_id = user_id
        super().__init__("You are not a member of this chat", status_code=403)


class ForbiddenError(BubblesError):
    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class NotFoundError(BubblesError):
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class ConflictError(BubblesError):
    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class UploadError(BubblesError):
    """Raised when an image cannot be stored."""
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, status_code=status_code)


class MutationFailedError(BubblesError):
    """Raised client-side after an optimistic mutation was rolled back.

    Attributes:
        message_id: The client-minted id of the rolled back message.
        cause: The underlying upload, transport or HTTP error.
    """
    def __init__(self, message: str, message_id: str, cause: Exception = None):
        self.message_id = message_id
        self.cause = cause
        status_code = getattr(cause, "status_code", 500)
        super().__init__(message, status_code=status_code)
