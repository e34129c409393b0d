from __future__ import annotations


class AppError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "Unexpected error"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.__class__.message
        if code is not None:
            self.code = code
        super().__init__(self.message)


# --- Proxy errors (OpenAI-style envelope) ---


class ProxyUpstreamError(AppError):
    status_code = 502
    code = "upstream_unavailable"
    error_type = "upstream_error"
    message = "Bad Gateway - could not reach upstream"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message, code=code)


class ProxyBindError(AppError):
    code = "bind_failed"
    message = "Could not bind the proxy listening socket"


# --- Usage store errors ---


class UsageStoreError(AppError):
    code = "usage_store_error"
    message = "Usage event could not be stored"
