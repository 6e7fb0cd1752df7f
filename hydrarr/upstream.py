"""
Upstream *arr client
Authenticated JSON requests against Sonarr, Radarr, Lidarr, Readarr, Prowlarr
and Bazarr with per-call timeouts and fallback endpoints.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, Optional

import aiohttp

from .config import ServiceConfig
from .exceptions import (
    NoEndpointAvailableError,
    NonJsonResponseError,
    NotConfiguredError,
    UpstreamConnectionError,
    UpstreamError,
    UpstreamStatusError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
SNIPPET_LENGTH = 120


def join_url(base_url: str, endpoint: str) -> str:
    """Join a base URL and an endpoint with exactly one slash between them."""
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def snippet(text: str, length: int = SNIPPET_LENGTH) -> str:
    return (text or "").strip()[:length]


class UpstreamClient:
    """
    Client for the *arr family of APIs.

    Services are passed in as immutable ServiceConfig descriptors; a service
    that is unknown or lacks a URL/API key is never contacted.
    """

    def __init__(
        self,
        services: Dict[str, ServiceConfig],
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.services = dict(services)
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Service lookup
    # ------------------------------------------------------------------

    def is_configured(self, service: str) -> bool:
        config = self.services.get(service)
        return bool(config and config.configured)

    def configured_services(self) -> list[str]:
        return [name for name, config in self.services.items() if config.configured]

    def get_service(self, service: str) -> ServiceConfig:
        """Return the service descriptor or raise NotConfiguredError."""
        config = self.services.get(service)
        if config is None or not config.configured:
            raise NotConfiguredError(service)
        return config

    def endpoint(self, service: str, path: str, legacy: bool = False) -> str:
        """Prefix ``path`` with the service's API path."""
        config = self.services.get(service)
        if config is None:
            prefix = "/api"
        else:
            prefix = config.legacy_prefix if legacy else config.api_prefix
        return join_url(prefix, path)

    def status_endpoints(self, service: str) -> list[str]:
        """Current and legacy system status endpoints, deduplicated."""
        endpoints = []
        for legacy in (False, True):
            endpoint = self.endpoint(service, "system/status", legacy=legacy)
            if endpoint not in endpoints:
                endpoints.append(endpoint)
        return endpoints

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _log_failure(self, service: str, endpoint: str, failure: str, message: str, **extra):
        logger.warning(
            message,
            extra={"service": service, "endpoint": endpoint, "failure": failure, **extra},
        )

    async def request(
        self,
        service: str,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make a request to an upstream service and return the parsed JSON.

        Args:
            service: Configured service name (e.g. "sonarr")
            endpoint: Endpoint path relative to the service base URL
            method: HTTP method
            body: Request body for non-GET methods; strings are sent as-is
            timeout: Override of the default timeout in seconds

        Raises:
            NotConfiguredError: service has no URL/API key
            UpstreamTimeoutError, UpstreamStatusError, NonJsonResponseError,
            UpstreamConnectionError: the call failed
        """
        config = self.get_service(service)
        method = method.upper()
        timeout = self.timeout if timeout is None else timeout
        url = join_url(config.base_url, endpoint)

        headers = {"X-Api-Key": config.api_key, "Accept": "application/json"}
        data = None
        if method != "GET" and body is not None:
            data = body if isinstance(body, str) else json.dumps(body)
            headers["Content-Type"] = "application/json"

        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                data=data,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if not 200 <= response.status < 300:
                    text = snippet(await response.text(errors="replace"))
                    self._log_failure(
                        service, endpoint, "status",
                        f"{service} {endpoint} returned HTTP {response.status}",
                        status=response.status,
                    )
                    raise UpstreamStatusError(service, endpoint, response.status, text)

                if response.status == 204:
                    return {}

                content_type = response.content_type or ""
                if "json" not in content_type.lower():
                    text = snippet(await response.text(errors="replace"))
                    self._log_failure(
                        service, endpoint, "non_json",
                        f"{service} {endpoint} returned {content_type or 'no content type'}",
                    )
                    raise NonJsonResponseError(service, endpoint, content_type, text)

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    self._log_failure(
                        service, endpoint, "invalid_json",
                        f"{service} {endpoint} returned malformed JSON: {e}",
                    )
                    raise NonJsonResponseError(service, endpoint, content_type, str(e)) from e

        except asyncio.TimeoutError as e:
            self._log_failure(
                service, endpoint, "timeout",
                f"{service} {endpoint} timed out after {timeout:g}s",
                timeout=timeout,
            )
            raise UpstreamTimeoutError(service, endpoint, timeout) from e
        except aiohttp.ClientError as e:
            self._log_failure(
                service, endpoint, "connection",
                f"{service} {endpoint} connection failed: {e}",
            )
            raise UpstreamConnectionError(
                f"{service}: {e or type(e).__name__}",
                service=service,
                endpoint=endpoint,
            ) from e

    async def request_with_fallback(
        self,
        service: str,
        endpoints: Iterable[str],
        method: str = "GET",
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Try each endpoint in order and return the first success.

        Raises the last error when every endpoint fails, or
        NoEndpointAvailableError when no endpoints were given.
        NotConfiguredError is raised immediately.
        """
        last_error: Optional[UpstreamError] = None
        for endpoint in endpoints:
            try:
                return await self.request(service, endpoint, method=method, body=body, timeout=timeout)
            except UpstreamError as e:
                last_error = e
                logger.debug(f"{service}: {endpoint} failed, trying next endpoint: {e}")

        if last_error is not None:
            raise last_error
        raise NoEndpointAvailableError(service)
