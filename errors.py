from typing import Optional


class ChatError(Exception):
    """Base for every error that is reported back to a caller.

    `code` is the stable machine-readable identifier sent over HTTP and in
    `error` socket events; `status_code` is the HTTP status it maps to.
    """

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {"message": self.message, "code": self.code}


class NotFound(ChatError):
    status_code = 404
    default_code = "NOT_FOUND"


class Expired(ChatError):
    status_code = 410
    default_code = "ROOM_EXPIRED"


class AtCapacity(ChatError):
    status_code = 403
    default_code = "ROOM_FULL"


class Forbidden(ChatError):
    status_code = 403
    default_code = "FORBIDDEN"


class InvalidSession(ChatError):
    status_code = 401
    default_code = "INVALID_SESSION"


class Conflict(ChatError):
    status_code = 409
    default_code = "CONFLICT"


class ValidationFailed(ChatError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class RateLimited(ChatError):
    status_code = 429
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, retry_after: int, code: Optional[str] = None):
        super().__init__(message, code)
        self.retry_after = retry_after

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["retryAfter"] = self.retry_after
        return payload


class UpstreamUnavailable(ChatError):
    status_code = 503
    default_code = "UPSTREAM_UNAVAILABLE"
