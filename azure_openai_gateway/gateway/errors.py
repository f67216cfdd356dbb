from __future__ import annotations

from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Base class for failures the gateway reports with its own error body."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "gateway_error"
    code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        param: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.param = param
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "message": self.message,
            "type": self.error_type,
            "param": self.param,
            "code": self.code,
        }
        error.update(self.details)
        return {"error": error}

    def to_response(self) -> JSONResponse:
        headers = None
        if self.status_code == status.HTTP_401_UNAUTHORIZED:
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=self.status_code,
            content=self.to_payload(),
            headers=headers,
        )


class ConfigurationError(GatewayError):
    """Raised when a feature is used without the settings it depends on."""

    error_type = "configuration_error"
    code = "gateway_misconfigured"


class AuthUnavailableError(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"
    code = "invalid_api_key"


class TranslationError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class UpstreamConnectionError(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_connection_error"


class UpstreamTimeoutError(UpstreamConnectionError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error_type = "upstream_timeout"


class AggregationError(GatewayError):
    error_type = "aggregation_error"

    def __init__(
        self,
        message: str,
        *,
        backend_status: int | None = None,
        backend_body: str | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if backend_status is not None:
            details["backend_status"] = backend_status
        if backend_body is not None:
            details["backend_body"] = backend_body
        super().__init__(message, details=details)
        self.backend_status = backend_status
        self.backend_body = backend_body


async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return exc.to_response()
