"""Error taxonomy shared by the lifecycle components."""

from __future__ import annotations


class ChangeGateError(Exception):
    """Base exception for all change governance errors."""

    status_code = 500

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        self.context: dict[str, str] = {}
        super().__init__(f"[{code}] {message}")

    def to_payload(self) -> dict:
        payload: dict = {"detail": self.message, "code": self.code}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class NotFoundError(ChangeGateError):
    """Raised when a ref, change, review or organization does not exist."""

    status_code = 404

    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(code, message)


class ConflictError(ChangeGateError):
    """Raised on branch collisions, merge conflicts and lost state races."""

    status_code = 409

    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(code, message)


class UnauthorizedError(ChangeGateError):
    """Raised when a caller is not allowed to perform an operation."""

    status_code = 401

    def __init__(self, message: str, code: str = "UNAUTHORIZED") -> None:
        super().__init__(code, message)


class RemoteUnavailableError(ChangeGateError):
    """Raised when the version-control backend fails, times out or rate limits."""

    status_code = 502

    def __init__(self, message: str, code: str = "REMOTE_UNAVAILABLE") -> None:
        super().__init__(code, message)


class ValidationError(ChangeGateError):
    """Raised on malformed input."""

    status_code = 422

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(code, message)
