from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse


@dataclass
class ErrorBody:
    error: str
    details: list[dict[str, Any]] | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class AppError(Exception):
    """Error whose message is safe to return to the caller."""

    def __init__(
        self,
        status_code: int,
        message: str,
        details: list[dict[str, Any]] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


class AuthError(AppError):
    def __init__(self, status_code: int = 401, message: str = "Unauthorized"):
        super().__init__(status_code, message)


class InvalidSourceError(AuthError):
    def __init__(self, message: str = "Invalid sourceClient"):
        super().__init__(400, message)


class UpstreamError(AppError):
    def __init__(self, message: str = "Upstream AI request failed"):
        super().__init__(502, message)


class RateLimitError(AppError):
    def __init__(self, message: str = "Too many requests, please try again later."):
        super().__init__(429, message)


class EnrichmentError(Exception):
    """Raised inside the classifier; always converted to default labels."""


class PersistenceError(Exception):
    """Raised when an exchange transaction fails and was rolled back."""


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    header_id = request.headers.get("x-request-id")
    return state_id or header_id or str(uuid4())


def app_error_response(
    status_code: int,
    message: str,
    request_id: str,
    details: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    body = ErrorBody(error=message, details=details)
    response = JSONResponse(status_code=status_code, content=body.as_dict())
    response.headers["x-request-id"] = request_id
    return response
