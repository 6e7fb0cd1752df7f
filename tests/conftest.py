"""
Pytest configuration and shared fixtures.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from hydrarr.config import Settings


# ============================================================================
# Fake aiohttp Fixtures
# ============================================================================

@pytest.fixture
def mock_response():
    """Create a factory for mock aiohttp responses usable with ``async with``."""
    def _create_response(
        json_data=None,
        status=200,
        text=None,
        content_type="application/json",
        cookies=None,
        body=None,
    ):
        response = MagicMock()
        response.status = status
        response.content_type = content_type
        response.json = AsyncMock(return_value=json_data)
        if body is not None:
            # Raw bytes decoded like ClientResponse.text(encoding, errors)
            response.text = AsyncMock(
                side_effect=lambda encoding=None, errors="strict": body.decode(encoding or "utf-8", errors)
            )
        else:
            response.text = AsyncMock(return_value="" if text is None else text)
        response.cookies = cookies or {}

        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(return_value=response)
        ctx.__aexit__ = AsyncMock(return_value=False)
        ctx.response = response
        return ctx
    return _create_response


@pytest.fixture
def mock_session():
    """Create a mock aiohttp session; set ``request.return_value`` or ``side_effect``."""
    session = MagicMock()
    session.closed = False
    session.request = MagicMock()
    session.close = AsyncMock()
    return session


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings with Sonarr, Radarr and qBittorrent configured."""
    return Settings(
        _env_file=None,
        sonarr_url="http://sonarr:8989/",
        sonarr_api_key="sonarr-key",
        radarr_url="http://radarr:7878",
        radarr_api_key="radarr-key",
        qbittorrent_url="http://qbit:8080",
        qbittorrent_username="admin",
        qbittorrent_password="secret-pass",
    )


@pytest.fixture
def empty_settings():
    """Settings with nothing configured."""
    return Settings(_env_file=None)


# ============================================================================
# Dashboard Fixtures
# ============================================================================

@pytest.fixture
def mock_upstream(settings):
    """UpstreamClient double backed by the real service descriptors."""
    from hydrarr.upstream import UpstreamClient

    real = UpstreamClient(settings.service_configs())
    upstream = MagicMock()
    upstream.services = real.services
    upstream.is_configured = real.is_configured
    upstream.endpoint = real.endpoint
    upstream.status_endpoints = real.status_endpoints
    upstream.request = AsyncMock()
    upstream.request_with_fallback = AsyncMock()
    upstream.close = AsyncMock()
    return upstream


@pytest.fixture
def mock_downloads():
    """QBittorrentClient double with nothing downloading."""
    from hydrarr.qbittorrent import DownloadListing

    downloads = MagicMock()
    downloads.configured = True
    downloads.list_downloads = AsyncMock(return_value=DownloadListing(configured=True))
    downloads.get_status = AsyncMock(return_value={
        "service": "qbittorrent",
        "configured": True,
        "status": "online",
        "version": "v4.6.2",
        "message": "qBittorrent v4.6.2 (connected)",
    })
    downloads.get_logs = AsyncMock(return_value=[])
    downloads.close = AsyncMock()
    return downloads


@pytest.fixture
def dashboard(settings, mock_upstream, mock_downloads):
    """Dashboard wired to mocked clients."""
    from hydrarr.dashboard import Dashboard
    return Dashboard(settings, upstream=mock_upstream, downloads=mock_downloads)
