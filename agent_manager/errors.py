"""Typed errors raised by the credential, trust and supervision services."""

from __future__ import annotations


class ManagerError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    http_status = 500
    user_message = "An internal error occurred."

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "user_message": self.user_message,
            "detail": str(self) if detail is None else str(detail),
        }


class ConfigError(ManagerError):
    """Server-side configuration is missing or invalid."""

    error_code = "CONFIG_ERROR"
    user_message = "Server configuration is invalid."


class ValidationError(ManagerError):
    """Malformed credential, key material or ciphertext."""

    error_code = "VALIDATION_ERROR"
    http_status = 400
    user_message = "The supplied data is invalid."


class AuthenticationError(ManagerError):
    """Git or SSH authentication failed."""

    error_code = "AUTHENTICATION_ERROR"
    http_status = 401
    user_message = "Authentication failed."


class OperationTimeoutError(ManagerError, TimeoutError):
    """A bounded wait (health poll, verification) ran out of time."""

    error_code = "TIMEOUT"
    http_status = 504
    user_message = "The operation timed out."


class ProcessError(ManagerError):
    """The supervised process failed to spawn, exited, or never became healthy."""

    error_code = "PROCESS_ERROR"
    user_message = "The agent server failed."

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = super().payload(detail=detail)
        if self.output:
            payload["output"] = self.output
        return payload


class StoreError(ManagerError):
    """Durable persistence failed."""

    error_code = "STORE_ERROR"
    http_status = 503
    user_message = "Persistent storage is unavailable."


class NotFoundError(ManagerError):
    """A referenced entity (request id, config, host) does not exist."""

    error_code = "NOT_FOUND"
    http_status = 404
    user_message = "The requested item was not found."


class HealthTimeoutError(ProcessError, OperationTimeoutError):
    """The process kept running but never passed a health check."""

    error_code = "HEALTH_TIMEOUT"
    http_status = 504
