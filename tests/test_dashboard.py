"""
Tests for the aggregation operations behind the HTTP routes.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock

from hydrarr.dashboard import Dashboard, parse_item_ids
from hydrarr.exceptions import (
    DownloadClientError,
    NotConfiguredError,
    UpstreamStatusError,
    UpstreamTimeoutError,
    ValidationError,
)
from hydrarr.normalize import DownloadInfo, LogEntry
from hydrarr.qbittorrent import DownloadListing


def route_requests(mock_upstream, routes):
    """Answer ``upstream.request`` by endpoint prefix; values that are exceptions are raised."""
    async def fake_request(service, endpoint, **kwargs):
        for prefix, value in routes.items():
            if endpoint.startswith(prefix):
                if isinstance(value, Exception):
                    raise value
                return value
        raise AssertionError(f"unexpected request {service} {endpoint}")

    mock_upstream.request.side_effect = fake_request


# ============================================================================
# Item Id Parsing
# ============================================================================

class TestParseItemIds:
    """Test comma-separated id parsing."""

    def test_parses_and_deduplicates(self):
        assert parse_item_ids("3, 1,3,,2") == [3, 1, 2]

    def test_empty(self):
        assert parse_item_ids("") == []
        assert parse_item_ids(None) == []

    @pytest.mark.parametrize("raw", ["1,abc", "0", "-4", "1.5"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError):
            parse_item_ids(raw)


# ============================================================================
# Service Listing and Overview
# ============================================================================

class TestOverview:
    """Test services(), health() and overview()."""

    def test_services_in_fixed_order(self, dashboard):
        assert dashboard.services() == ["sonarr", "radarr", "qbittorrent"]

    def test_health(self, dashboard):
        health = dashboard.health()
        assert health["ok"] is True
        assert health["configuredServices"] == ["sonarr", "radarr"]
        assert health["downloadClient"] is True

    @pytest.mark.asyncio
    async def test_overview_mixes_online_offline_and_not_configured(self, dashboard, mock_upstream):
        async def fake_fallback(service, endpoints, **kwargs):
            if service == "sonarr":
                return {"appName": "Sonarr", "version": "4.0.1", "instanceName": "Sonarr"}
            raise UpstreamTimeoutError(service, endpoints[-1], 10.0)

        mock_upstream.request_with_fallback.side_effect = fake_fallback

        result = await dashboard.overview()
        by_service = {item["service"]: item for item in result["items"]}

        assert [item["service"] for item in result["items"]] == [
            "sonarr", "radarr", "lidarr", "readarr", "prowlarr", "bazarr", "qbittorrent",
        ]
        assert by_service["sonarr"]["status"] == "online"
        assert by_service["sonarr"]["message"] == "Sonarr v4.0.1"
        assert by_service["radarr"]["status"] == "offline"
        assert "timed out" in by_service["radarr"]["message"]
        assert by_service["lidarr"]["status"] == "not_configured"
        assert by_service["qbittorrent"]["status"] == "online"

    @pytest.mark.asyncio
    async def test_instance_name_in_message(self, dashboard, mock_upstream):
        mock_upstream.request_with_fallback.return_value = {
            "appName": "Radarr", "version": "5.2", "instanceName": "Radarr 4K",
        }
        status = await dashboard.service_status("radarr")
        assert status["message"] == "Radarr v5.2 (Radarr 4K)"


# ============================================================================
# Libraries
# ============================================================================

class TestLibraryOverview:
    """Test tv_overview() and movies_overview()."""

    @pytest.mark.asyncio
    async def test_movies_joined_with_queue_and_torrents(self, dashboard, mock_upstream, mock_downloads):
        route_requests(mock_upstream, {
            "/api/v3/movie": [
                {"id": 1, "title": "Have", "hasFile": True},
                {"id": 2, "title": "Want", "hasFile": False},
            ],
        })
        mock_upstream.request_with_fallback.return_value = {
            "records": [{"movieId": 2, "downloadId": "ABC"}],
        }
        info = DownloadInfo(
            hash="abc", name="Want.2019.1080p", state="downloading", progressPct=42.0,
            etaSeconds=60, isStalled=False, stalledSeconds=None, peers=4, sizeGb=3.0,
        )
        mock_downloads.list_downloads.return_value = DownloadListing(True, {"abc": info})

        result = await dashboard.movies_overview()

        assert result["configured"] is True
        assert result["queueAvailable"] is True
        assert result["downloadClient"] == {"configured": True, "available": True}
        assert [i["id"] for i in result["available"]] == [1]
        wanted = result["wantedDownloading"][0]
        assert wanted["status"] == "downloading"
        assert wanted["download"]["progressPct"] == 42.0
        assert wanted["summary"] == "Downloading 42.0%"

    @pytest.mark.asyncio
    async def test_queue_and_download_failures_degrade(self, dashboard, mock_upstream, mock_downloads):
        route_requests(mock_upstream, {
            "/api/v3/series": [
                {"id": 1, "title": "Show", "statistics": {"episodeFileCount": 1, "episodeCount": 2}},
            ],
        })
        mock_upstream.request_with_fallback.side_effect = UpstreamStatusError(
            "sonarr", "/api/v3/queue", 500, "boom",
        )
        mock_downloads.list_downloads.side_effect = DownloadClientError("qbittorrent: down")

        result = await dashboard.tv_overview()

        assert result["configured"] is True
        assert result["queueAvailable"] is False
        assert result["downloadClient"]["available"] is False
        assert result["wantedDownloading"][0]["status"] == "wanted"

    @pytest.mark.asyncio
    async def test_library_failure_is_fatal(self, dashboard, mock_upstream):
        route_requests(mock_upstream, {
            "/api/v3/series": UpstreamTimeoutError("sonarr", "/api/v3/series", 10.0),
        })
        mock_upstream.request_with_fallback.return_value = []

        with pytest.raises(UpstreamTimeoutError):
            await dashboard.tv_overview()

    @pytest.mark.asyncio
    async def test_not_configured(self, empty_settings):
        dashboard = Dashboard(empty_settings)
        assert await dashboard.tv_overview() == {
            "configured": False, "wantedDownloading": [], "available": [],
        }

    @pytest.mark.asyncio
    async def test_queue_endpoints_fall_back_to_details(self, dashboard, mock_upstream):
        route_requests(mock_upstream, {"/api/v3/movie": []})
        mock_upstream.request_with_fallback.return_value = []

        await dashboard.movies_overview()

        service, endpoints = mock_upstream.request_with_fallback.call_args.args
        assert service == "radarr"
        assert endpoints[0].startswith("/api/v3/queue?page=1&pageSize=1000")
        assert endpoints[1] == "/api/v3/queue/details?includeUnknownMovieItems=false"

    @pytest.mark.asyncio
    async def test_season_episodes(self, dashboard, mock_upstream):
        route_requests(mock_upstream, {
            "/api/v3/episode?seriesId=5": [
                {"id": 1, "seasonNumber": 1, "episodeNumber": 1, "hasFile": True},
                {"id": 2, "seasonNumber": 2, "episodeNumber": 1, "hasFile": False},
            ],
        })

        result = await dashboard.season_episodes(5, 1)

        assert result["configured"] is True
        assert result["seriesId"] == 5
        assert [i["id"] for i in result["items"]] == [1]
        assert result["seasonStatus"] == "available"


# ============================================================================
# Releases
# ============================================================================

class TestReleases:
    """Test release listing, rejected checks and grabbing."""

    @pytest.mark.asyncio
    async def test_list_releases_sorted(self, dashboard, mock_upstream):
        route_requests(mock_upstream, {
            "/api/v3/release?seriesId=9": [
                {"guid": "a", "seeders": 100, "rejected": True},
                {"guid": "b", "seeders": 5, "approved": True},
            ],
        })

        result = await dashboard.list_releases("sonarr", 9)

        assert [r["guid"] for r in result["items"]] == ["b", "a"]
        assert mock_upstream.request.call_args.kwargs["timeout"] == 60.0

    @pytest.mark.asyncio
    async def test_unsupported_service(self, dashboard):
        with pytest.raises(ValidationError):
            await dashboard.list_releases("lidarr", 1)

    @pytest.mark.asyncio
    async def test_has_rejected(self, dashboard, mock_upstream):
        route_requests(mock_upstream, {"/api/v3/release": [{"guid": "a", "approved": False}]})
        result = await dashboard.has_rejected("radarr", 4)
        assert result["hasRejected"] is True

    @pytest.mark.asyncio
    async def test_batch_counts_failures(self, dashboard, mock_upstream):
        async def fake_request(service, endpoint, **kwargs):
            if endpoint.endswith("movieId=2"):
                raise UpstreamTimeoutError(service, endpoint, 60.0)
            if endpoint.endswith("movieId=1"):
                return [{"guid": "x", "rejections": ["Unknown movie"]}]
            return [{"guid": "y", "approved": True}]

        mock_upstream.request.side_effect = fake_request

        result = await dashboard.has_rejected_batch("radarr", [1, 2, 3])

        assert result["items"] == {"1": True, "2": False, "3": False}
        assert result["checked"] == 2
        assert result["failed"] == 1

    @pytest.mark.asyncio
    async def test_batch_respects_service_cap(self, dashboard, mock_upstream):
        in_flight = 0
        peak = 0

        async def fake_request(service, endpoint, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return []

        mock_upstream.request.side_effect = fake_request

        await dashboard.has_rejected_batch("sonarr", list(range(1, 9)))

        assert peak == 2

    @pytest.mark.asyncio
    async def test_grab_posts_release(self, dashboard, mock_upstream):
        mock_upstream.request.return_value = {"id": 1}
        release = {"guid": "abc", "indexerId": 2, "title": "Show.S01E01"}

        result = await dashboard.grab_release("sonarr", release)

        assert result == {"ok": True, "service": "sonarr", "result": {"id": 1}}
        args, kwargs = mock_upstream.request.call_args
        assert args == ("sonarr", "/api/v3/release")
        assert kwargs["method"] == "POST"
        assert kwargs["body"] is release

    @pytest.mark.asyncio
    async def test_grab_requires_guid(self, dashboard):
        with pytest.raises(ValidationError):
            await dashboard.grab_release("sonarr", {"title": "no guid"})
        with pytest.raises(ValidationError):
            await dashboard.grab_release("sonarr", None)

    @pytest.mark.asyncio
    async def test_grab_not_configured(self, empty_settings):
        dashboard = Dashboard(empty_settings)
        with pytest.raises(NotConfiguredError):
            await dashboard.grab_release("radarr", {"guid": "g"})


# ============================================================================
# Logs
# ============================================================================

class TestErrorLogs:
    """Test error_logs()."""

    @pytest.mark.asyncio
    async def test_merged_sorted_and_failures_reported(self, dashboard, mock_upstream, mock_downloads):
        route_requests(mock_upstream, {
            "/api/v3/log": {"records": [
                {"level": "Error", "message": "Import failed", "time": "2024-02-01T00:00:00Z"},
                {"level": "Info", "message": "Started", "time": "2024-01-01T00:00:00Z"},
            ]},
        })
        mock_downloads.get_logs.side_effect = DownloadClientError("qbittorrent: down")

        async def fake_request(service, endpoint, **kwargs):
            if service == "radarr":
                raise UpstreamStatusError(service, endpoint, 503, "")
            return await route(service, endpoint, **kwargs)

        route = mock_upstream.request.side_effect
        mock_upstream.request.side_effect = fake_request

        result = await dashboard.error_logs()

        assert [e["message"] for e in result["items"]] == ["Import failed", "Started"]
        assert {e["service"] for e in result["errors"]} == {"radarr", "qbittorrent"}

    @pytest.mark.asyncio
    async def test_level_and_search_filters(self, dashboard, mock_upstream, mock_downloads):
        route_requests(mock_upstream, {"/api/v3/log": []})
        mock_downloads.get_logs.return_value = [
            LogEntry("qbittorrent", "warn", "Tracker timeout", "2024-01-02T00:00:00Z"),
            LogEntry("qbittorrent", "warn", "Disk almost full", "2024-01-01T00:00:00Z"),
            LogEntry("qbittorrent", "info", "Tracker ok", "2024-01-03T00:00:00Z"),
        ]

        result = await dashboard.error_logs(level="warn", search="TRACKER")

        assert [e["message"] for e in result["items"]] == ["Tracker timeout"]

    @pytest.mark.asyncio
    async def test_single_service(self, dashboard, mock_upstream, mock_downloads):
        mock_downloads.get_logs.return_value = [LogEntry("qbittorrent", "info", "x", None)]

        result = await dashboard.error_logs(service="qbittorrent")

        mock_upstream.request.assert_not_called()
        assert len(result["items"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_level(self, dashboard):
        with pytest.raises(ValidationError):
            await dashboard.error_logs(level="verbose")

    @pytest.mark.asyncio
    async def test_capped(self, dashboard, mock_upstream, mock_downloads):
        route_requests(mock_upstream, {"/api/v3/log": []})
        mock_downloads.get_logs.return_value = [
            LogEntry("qbittorrent", "info", str(i), None) for i in range(600)
        ]

        result = await dashboard.error_logs()

        assert len(result["items"]) == 400


# ============================================================================
# Category Dashboard
# ============================================================================

class TestCategoryDashboard:
    """Test category_dashboard()."""

    @pytest.mark.asyncio
    async def test_tv_category(self, dashboard, mock_upstream):
        mock_upstream.request_with_fallback.return_value = {"appName": "Sonarr", "version": "4.0"}
        route_requests(mock_upstream, {
            "/api/v3/queue": {"records": [{"id": 5, "series": {"title": "Show"}, "status": "downloading"}]},
        })

        result = await dashboard.category_dashboard("tv")

        assert result["items"][0]["title"] == "Sonarr v4.0"
        assert result["items"][1] == {
            "id": 5, "service": "sonarr", "source": "Queue", "title": "Show", "summary": "downloading",
        }

    @pytest.mark.asyncio
    async def test_unconfigured_category_is_empty(self, dashboard):
        assert await dashboard.category_dashboard("music") == {"items": []}

    @pytest.mark.asyncio
    async def test_unknown_category(self, dashboard):
        with pytest.raises(ValidationError, match="Unknown category"):
            await dashboard.category_dashboard("books")


class TestClose:
    """Test close()."""

    @pytest.mark.asyncio
    async def test_close_closes_both_clients(self, dashboard, mock_upstream, mock_downloads):
        await dashboard.close()
        mock_upstream.close.assert_awaited_once()
        mock_downloads.close.assert_awaited_once()
