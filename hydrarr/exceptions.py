"""
Custom exception hierarchy for Hydrarr.
Provides specific exception types so route handlers can map failures to responses.
"""


class HydrarrError(Exception):
    """Base exception for all Hydrarr errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(HydrarrError):
    """Raised when there's a configuration problem."""

    pass


class NotConfiguredError(ConfigurationError):
    """Raised when a service has no URL or API key configured."""

    def __init__(self, service: str, message: str | None = None):
        super().__init__(message or f"Service {service} is not configured")
        self.service = service


# Validation errors
class ValidationError(HydrarrError):
    """Raised when client input is invalid."""

    pass


# Upstream (*arr) errors
class UpstreamError(HydrarrError):
    """Base exception for failed calls to an upstream service."""

    def __init__(
        self,
        message: str,
        service: str | None = None,
        endpoint: str | None = None,
        details: str | None = None,
    ):
        super().__init__(message, details)
        self.service = service
        self.endpoint = endpoint


class UpstreamTimeoutError(UpstreamError):
    """Raised when an upstream call exceeds its timeout."""

    def __init__(self, service: str, endpoint: str, timeout: float):
        super().__init__(
            f"{service}: request to {endpoint} timed out after {timeout:g}s",
            service=service,
            endpoint=endpoint,
        )
        self.timeout = timeout


class UpstreamStatusError(UpstreamError):
    """Raised when an upstream service answers with a non-2xx status."""

    def __init__(self, service: str, endpoint: str, status: int, snippet: str = ""):
        super().__init__(
            f"{service}: {status} {snippet}".rstrip(),
            service=service,
            endpoint=endpoint,
        )
        self.status = status
        self.snippet = snippet


class NonJsonResponseError(UpstreamError):
    """Raised when an upstream service answers with something other than JSON."""

    def __init__(self, service: str, endpoint: str, content_type: str, snippet: str = ""):
        super().__init__(
            f"{service}: expected JSON but got {content_type or 'unknown content type'}",
            service=service,
            endpoint=endpoint,
            details=snippet or None,
        )
        self.content_type = content_type
        self.snippet = snippet


class UpstreamConnectionError(UpstreamError):
    """Raised when the connection to an upstream service fails."""

    pass


class NoEndpointAvailableError(UpstreamError):
    """Raised when a fallback request is given no endpoints to try."""

    def __init__(self, service: str):
        super().__init__(f"{service}: no endpoint available", service=service)


# Download client errors
class DownloadClientError(HydrarrError):
    """Base exception for download client errors."""

    pass


class LoginError(DownloadClientError):
    """Raised when authentication to the download client fails."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
