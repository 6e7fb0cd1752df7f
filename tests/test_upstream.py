"""
Tests for the *arr upstream client.
"""

import asyncio
import json
import pytest
from unittest.mock import patch

import aiohttp

from hydrarr.config import ServiceConfig
from hydrarr.exceptions import (
    NoEndpointAvailableError,
    NonJsonResponseError,
    NotConfiguredError,
    UpstreamConnectionError,
    UpstreamStatusError,
    UpstreamTimeoutError,
)
from hydrarr.upstream import UpstreamClient, join_url, snippet


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def client():
    """Client with Lidarr configured and Bazarr missing its key."""
    return UpstreamClient({
        "lidarr": ServiceConfig(
            name="lidarr", url="http://x/", api_key="lidarr-key", api_prefix="/api/v1",
        ),
        "bazarr": ServiceConfig(name="bazarr", url="http://bazarr", api_prefix="/api"),
    }, timeout=5.0)


# ============================================================================
# URL Helpers
# ============================================================================

class TestUrlHelpers:
    """Test URL joining and snippets."""

    def test_join_url_single_slash(self):
        assert join_url("http://x/", "/api/v1/queue") == "http://x/api/v1/queue"
        assert join_url("http://x", "api/v1/queue") == "http://x/api/v1/queue"
        assert join_url("http://x///", "//api") == "http://x/api"

    def test_snippet_truncates(self):
        assert len(snippet("a" * 500)) == 120
        assert snippet(None) == ""

    def test_endpoint_uses_service_prefix(self, client):
        assert client.endpoint("lidarr", "queue") == "/api/v1/queue"
        assert client.endpoint("lidarr", "system/status", legacy=True) == "/api/system/status"

    def test_status_endpoints_deduplicated(self, client):
        assert client.status_endpoints("lidarr") == ["/api/v1/system/status", "/api/system/status"]
        assert client.status_endpoints("bazarr") == ["/api/system/status"]


# ============================================================================
# Service Lookup
# ============================================================================

class TestServiceLookup:
    """Test configured-service checks."""

    def test_is_configured(self, client):
        assert client.is_configured("lidarr")
        assert not client.is_configured("bazarr")
        assert not client.is_configured("sonarr")

    def test_configured_services(self, client):
        assert client.configured_services() == ["lidarr"]

    def test_get_service_raises(self, client):
        with pytest.raises(NotConfiguredError):
            client.get_service("bazarr")


# ============================================================================
# Requests
# ============================================================================

class TestRequest:
    """Test UpstreamClient.request."""

    @pytest.mark.asyncio
    async def test_get_sends_api_key_to_joined_url(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response([{"id": 1}])

        with patch.object(client, "_get_session", return_value=mock_session):
            result = await client.request("lidarr", "/api/v1/queue")

        assert result == [{"id": 1}]
        args, kwargs = mock_session.request.call_args
        assert args == ("GET", "http://x/api/v1/queue")
        assert kwargs["headers"]["X-Api-Key"] == "lidarr-key"
        assert kwargs["data"] is None
        assert kwargs["timeout"].total == 5.0

    @pytest.mark.asyncio
    async def test_post_body_is_json_encoded(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response({"ok": True})

        with patch.object(client, "_get_session", return_value=mock_session):
            await client.request("lidarr", "/api/v1/release", method="post", body={"guid": "g"})

        args, kwargs = mock_session.request.call_args
        assert args[0] == "POST"
        assert json.loads(kwargs["data"]) == {"guid": "g"}
        assert kwargs["headers"]["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_string_body_sent_as_is(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response({})

        with patch.object(client, "_get_session", return_value=mock_session):
            await client.request("lidarr", "/api/v1/command", method="POST", body='{"name":"x"}')

        assert mock_session.request.call_args.kwargs["data"] == '{"name":"x"}'

    @pytest.mark.asyncio
    async def test_timeout_override(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response([])

        with patch.object(client, "_get_session", return_value=mock_session):
            await client.request("lidarr", "/api/v1/release", timeout=60.0)

        assert mock_session.request.call_args.kwargs["timeout"].total == 60.0

    @pytest.mark.asyncio
    async def test_no_content(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response(status=204, content_type="")

        with patch.object(client, "_get_session", return_value=mock_session):
            assert await client.request("lidarr", "/api/v1/queue/1", method="DELETE") == {}

    @pytest.mark.asyncio
    async def test_non_2xx_raises_status_error_with_snippet(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response(
            status=401, text="Unauthorized " + "x" * 300, content_type="text/plain",
        )

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(UpstreamStatusError) as exc_info:
                await client.request("lidarr", "/api/v1/queue")

        error = exc_info.value
        assert error.status == 401
        assert error.service == "lidarr"
        assert error.snippet.startswith("Unauthorized")
        assert len(error.snippet) <= 120

    @pytest.mark.asyncio
    async def test_undecodable_error_body_still_raises_status_error(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response(
            status=502, body=b"\xff\xfe upstream proxy error \xe9", content_type="text/html",
        )

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(UpstreamStatusError) as exc_info:
                await client.request("lidarr", "/api/v1/artist")

        assert exc_info.value.status == 502
        assert "upstream proxy error" in exc_info.value.snippet

    @pytest.mark.asyncio
    async def test_undecodable_non_json_body(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response(
            body=b"\xff\xfe<html>login</html>", content_type="text/html",
        )

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(NonJsonResponseError) as exc_info:
                await client.request("lidarr", "/api/v1/artist")

        assert "<html>login</html>" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_content_type(self, client, mock_session, mock_response):
        mock_session.request.return_value = mock_response(
            text="<html>login</html>", content_type="text/html",
        )

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(NonJsonResponseError) as exc_info:
                await client.request("lidarr", "/api/v1/queue")

        assert "<html>" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_json(self, client, mock_session, mock_response):
        ctx = mock_response()
        ctx.response.json.side_effect = json.JSONDecodeError("Expecting value", "", 0)
        mock_session.request.return_value = ctx

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(NonJsonResponseError):
                await client.request("lidarr", "/api/v1/queue")

    @pytest.mark.asyncio
    async def test_timeout_raises_and_logs(self, client, mock_session, caplog):
        mock_session.request.side_effect = asyncio.TimeoutError()

        with patch.object(client, "_get_session", return_value=mock_session):
            with caplog.at_level("WARNING", logger="hydrarr.upstream"):
                with pytest.raises(UpstreamTimeoutError) as exc_info:
                    await client.request("lidarr", "/api/v1/queue")

        assert exc_info.value.timeout == 5.0
        record = caplog.records[-1]
        assert record.service == "lidarr"
        assert record.endpoint == "/api/v1/queue"
        assert record.failure == "timeout"

    @pytest.mark.asyncio
    async def test_connection_error(self, client, mock_session):
        mock_session.request.side_effect = aiohttp.ClientConnectionError("refused")

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(UpstreamConnectionError, match="refused"):
                await client.request("lidarr", "/api/v1/queue")

    @pytest.mark.asyncio
    async def test_not_configured_makes_no_network_call(self, client, mock_session):
        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(NotConfiguredError):
                await client.request("bazarr", "/api/system/status")
            with pytest.raises(NotConfiguredError):
                await client.request("sonarr", "/api/v3/series")

        mock_session.request.assert_not_called()


# ============================================================================
# Fallback
# ============================================================================

class TestRequestWithFallback:
    """Test request_with_fallback."""

    @pytest.mark.asyncio
    async def test_second_endpoint_used_after_failure(self, client, mock_session, mock_response):
        mock_session.request.side_effect = [
            mock_response(status=404, text="Not Found", content_type="text/plain"),
            mock_response({"version": "1.0"}),
        ]

        with patch.object(client, "_get_session", return_value=mock_session):
            result = await client.request_with_fallback(
                "lidarr", ["/api/v1/system/status", "/api/system/status"]
            )

        assert result == {"version": "1.0"}
        assert mock_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_last_error_raised(self, client, mock_session, mock_response):
        mock_session.request.side_effect = [
            mock_response(status=404, text="first", content_type="text/plain"),
            mock_response(status=500, text="second", content_type="text/plain"),
        ]

        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(UpstreamStatusError) as exc_info:
                await client.request_with_fallback("lidarr", ["/a", "/b"])

        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_no_endpoints(self, client):
        with pytest.raises(NoEndpointAvailableError):
            await client.request_with_fallback("lidarr", [])

    @pytest.mark.asyncio
    async def test_not_configured_is_not_retried(self, client, mock_session):
        with patch.object(client, "_get_session", return_value=mock_session):
            with pytest.raises(NotConfiguredError):
                await client.request_with_fallback("bazarr", ["/a", "/b"])
        mock_session.request.assert_not_called()


# ============================================================================
# Session Lifecycle
# ============================================================================

class TestSession:
    """Test session creation and close."""

    @pytest.mark.asyncio
    async def test_session_created_lazily_and_closed(self, client):
        assert client._session is None
        session = await client._get_session()
        assert isinstance(session, aiohttp.ClientSession)
        assert await client._get_session() is session
        await client.close()
        assert client._session is None
