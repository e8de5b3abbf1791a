"""
Error taxonomy shared by the store, the service layer and the HTTP/WebSocket surface.

Each error carries the HTTP status it is surfaced with.
"""


class ChatError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(ChatError):
    """Missing or malformed input."""
    status_code = 400


class AuthError(ChatError):
    """Missing, unknown or revoked bearer token, or bad credentials."""
    status_code = 401


class AccessError(ChatError):
    """Caller is not a member of the target room."""
    status_code = 403


class NotFoundError(ChatError):
    status_code = 404


class ConflictError(ChatError):
    """Username already taken."""
    status_code = 409


class IntegrityError(ChatError):
    """Internal inconsistency, e.g. a message whose sender does not resolve."""
    status_code = 500


def error_for_status(status_code: int, message: str) -> ChatError:
    """Rebuild the matching error from an HTTP status (used by the client)."""
    for cls in (ValidationError, AuthError, AccessError, NotFoundError, ConflictError):
        if cls.status_code == status_code:
            return cls(message)
    return ChatError(message)
