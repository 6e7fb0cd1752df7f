"""
Aggregation operations behind the HTTP routes.

Each public coroutine computes its response fresh from the upstream services:
nothing fetched here outlives the request that asked for it.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .concurrency import map_limit, settle
from .config import CATEGORY_TO_SERVICES, DOWNLOAD_CLIENT, SERVICE_ORDER, Settings
from .exceptions import NotConfiguredError, UpstreamError, ValidationError
from .logging_config import LogContext
from .normalize import (
    LOG_LEVELS,
    extract_records,
    first_present,
    normalize_log_entry,
    normalize_release,
    sort_logs,
)
from .qbittorrent import DownloadListing, QBittorrentClient
from .reconcile import build_episode_list, reconcile_library, sort_releases
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 400
LOG_PAGE_SIZE = 250
QUEUE_PAGE_SIZE = 1000
CATEGORY_QUEUE_LIMIT = 20

# Query parameter naming the library item a release search is for
RELEASE_ITEM_KEYS = {
    "sonarr": "seriesId",
    "radarr": "movieId",
}

LIBRARIES = {
    "sonarr": {"kind": "series", "path": "series", "unknown_flag": "includeUnknownSeriesItems"},
    "radarr": {"kind": "movie", "path": "movie", "unknown_flag": "includeUnknownMovieItems"},
}


def not_configured_library() -> Dict[str, Any]:
    return {"configured": False, "wantedDownloading": [], "available": []}


def parse_item_ids(raw: Any) -> List[int]:
    """Comma-separated positive integer ids, deduplicated, order kept."""
    if raw is None:
        return []
    parts = raw if isinstance(raw, (list, tuple)) else str(raw).split(",")
    ids: List[int] = []
    for part in parts:
        text = str(part).strip()
        if not text:
            continue
        try:
            item_id = int(text)
        except ValueError:
            raise ValidationError(f"Invalid item id: {text}") from None
        if item_id <= 0:
            raise ValidationError(f"Invalid item id: {text}")
        if item_id not in ids:
            ids.append(item_id)
    return ids


class Dashboard:
    """
    Fans requests out to the configured services and assembles UI payloads.

    The clients are injected so tests (and the CLI) can supply their own.
    """

    def __init__(
        self,
        settings: Settings,
        upstream: Optional[UpstreamClient] = None,
        downloads: Optional[QBittorrentClient] = None,
    ):
        self.settings = settings
        self.upstream = upstream or UpstreamClient(
            settings.service_configs(),
            timeout=settings.upstream_timeout,
        )
        self.downloads = downloads or QBittorrentClient(
            settings.download_client_config(),
            timeout=settings.upstream_timeout,
        )

    async def close(self):
        await self.upstream.close()
        await self.downloads.close()

    # ------------------------------------------------------------------
    # Service listing
    # ------------------------------------------------------------------

    def services(self) -> List[str]:
        """Configured services, including the download client."""
        services = [name for name in SERVICE_ORDER if self.upstream.is_configured(name)]
        if self.downloads.configured:
            services.append(DOWNLOAD_CLIENT)
        return services

    def health(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "configuredServices": [n for n in SERVICE_ORDER if self.upstream.is_configured(n)],
            "downloadClient": self.downloads.configured,
        }

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    async def service_status(self, service: str) -> Dict[str, Any]:
        """Online/offline/not_configured summary of one *arr service. Never raises."""
        if not self.upstream.is_configured(service):
            return {
                "service": service,
                "configured": False,
                "status": "not_configured",
                "message": "Not configured",
            }
        try:
            status = await self.upstream.request_with_fallback(
                service, self.upstream.status_endpoints(service)
            )
        except UpstreamError as e:
            return {
                "service": service,
                "configured": True,
                "status": "offline",
                "message": str(e),
            }

        status = status if isinstance(status, dict) else {}
        app_name = status.get("appName") or service
        version = status.get("version")
        instance = status.get("instanceName")
        message = f"{app_name} v{version or '?'}"
        if instance and instance != app_name:
            message += f" ({instance})"
        return {
            "service": service,
            "configured": True,
            "status": "online",
            "version": version,
            "message": message,
        }

    async def overview(self) -> Dict[str, Any]:
        outcomes = await settle(
            *(self.service_status(name) for name in SERVICE_ORDER),
            self.downloads.get_status(),
        )
        names = SERVICE_ORDER + [DOWNLOAD_CLIENT]
        items = []
        for name, outcome in zip(names, outcomes):
            if outcome.ok:
                items.append(outcome.value)
            else:
                logger.error(f"Status check for {name} crashed: {outcome.error}")
                items.append({
                    "service": name,
                    "configured": True,
                    "status": "offline",
                    "message": str(outcome.error),
                })
        return {"items": items}

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    async def _fetch_queue(self, service: str, unknown_flag: str) -> List[Dict[str, Any]]:
        query = f"page=1&pageSize={QUEUE_PAGE_SIZE}&{unknown_flag}=false"
        payload = await self.upstream.request_with_fallback(
            service,
            [
                self.upstream.endpoint(service, f"queue?{query}"),
                self.upstream.endpoint(service, f"queue/details?{unknown_flag}=false"),
            ],
        )
        return extract_records(payload)

    async def _library_overview(self, service: str) -> Dict[str, Any]:
        if not self.upstream.is_configured(service):
            return not_configured_library()

        catalog = LIBRARIES[service]
        with LogContext(service=service, operation=f"{catalog['kind']}_overview"):
            library_outcome, queue_outcome, downloads_outcome = await settle(
                self.upstream.request(service, self.upstream.endpoint(service, catalog["path"])),
                self._fetch_queue(service, catalog["unknown_flag"]),
                self.downloads.list_downloads(),
            )

            library = library_outcome.unwrap()
            if not isinstance(library, list):
                library = extract_records(library)

            if queue_outcome.ok:
                queue = queue_outcome.value
            else:
                logger.warning(f"{service} queue unavailable, continuing without it: {queue_outcome.error}")
                queue = []

            if downloads_outcome.ok:
                listing = downloads_outcome.value
            else:
                logger.warning(f"Download client unavailable, continuing without it: {downloads_outcome.error}")
                listing = DownloadListing(configured=self.downloads.configured)

            result = reconcile_library(
                catalog["kind"],
                library,
                queue,
                listing.by_hash,
                self.upstream.services.get(service),
            )

        return {
            "configured": True,
            "service": service,
            "downloadClient": {
                "configured": listing.configured,
                "available": downloads_outcome.ok,
            },
            "queueAvailable": queue_outcome.ok,
            **result,
        }

    async def tv_overview(self) -> Dict[str, Any]:
        return await self._library_overview("sonarr")

    async def movies_overview(self) -> Dict[str, Any]:
        return await self._library_overview("radarr")

    async def season_episodes(self, series_id: int, season_number: int) -> Dict[str, Any]:
        if not self.upstream.is_configured("sonarr"):
            return {"configured": False, "seriesId": series_id, "seasonNumber": season_number, "items": []}
        payload = await self.upstream.request(
            "sonarr", self.upstream.endpoint("sonarr", f"episode?seriesId={series_id}")
        )
        episodes = payload if isinstance(payload, list) else extract_records(payload)
        return {"configured": True, "seriesId": series_id, **build_episode_list(episodes, season_number)}

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def _release_key(self, service: str) -> str:
        key = RELEASE_ITEM_KEYS.get(service)
        if key is None:
            raise ValidationError(f"Releases are not supported for service: {service}")
        return key

    async def fetch_releases(self, service: str, item_id: int) -> List[Dict[str, Any]]:
        key = self._release_key(service)
        payload = await self.upstream.request(
            service,
            self.upstream.endpoint(service, f"release?{key}={item_id}"),
            timeout=self.settings.release_search_timeout,
        )
        raw = payload if isinstance(payload, list) else extract_records(payload)
        return sort_releases([normalize_release(service, r) for r in raw])

    async def list_releases(self, service: str, item_id: int) -> Dict[str, Any]:
        self._release_key(service)
        if not self.upstream.is_configured(service):
            return {"configured": False, "service": service, "itemId": item_id, "items": []}
        items = await self.fetch_releases(service, item_id)
        return {"configured": True, "service": service, "itemId": item_id, "items": items}

    async def has_rejected_releases(self, service: str, item_id: int) -> bool:
        releases = await self.fetch_releases(service, item_id)
        return any(release["rejected"] for release in releases)

    async def has_rejected(self, service: str, item_id: int) -> Dict[str, Any]:
        self._release_key(service)
        if not self.upstream.is_configured(service):
            return {"configured": False, "service": service, "itemId": item_id, "hasRejected": False}
        return {
            "configured": True,
            "service": service,
            "itemId": item_id,
            "hasRejected": await self.has_rejected_releases(service, item_id),
        }

    async def has_rejected_batch(self, service: str, item_ids: Iterable[int]) -> Dict[str, Any]:
        """
        Rejected-release check for many items with bounded concurrency.

        Every item costs one full release search; a failed search counts as
        ``failed`` and reports False rather than failing the batch.
        """
        self._release_key(service)
        item_ids = list(item_ids)
        if not self.upstream.is_configured(service):
            return {"configured": False, "service": service, "items": {}, "checked": 0, "failed": 0}

        limit = self.settings.rejected_check_concurrency(service)
        outcomes = await map_limit(
            item_ids, limit, lambda item_id: self.has_rejected_releases(service, item_id)
        )

        items: Dict[str, bool] = {}
        failed = 0
        for item_id, outcome in zip(item_ids, outcomes):
            if outcome.ok:
                items[str(item_id)] = bool(outcome.value)
            else:
                failed += 1
                items[str(item_id)] = False
        if failed:
            logger.warning(
                f"Rejected-release check failed for {failed}/{len(item_ids)} {service} items",
                extra={"service": service},
            )
        return {
            "configured": True,
            "service": service,
            "items": items,
            "checked": len(item_ids) - failed,
            "failed": failed,
        }

    async def grab_release(self, service: str, release: Any) -> Dict[str, Any]:
        """Send a release back to its manager for download. Not retried."""
        self._release_key(service)
        if not isinstance(release, dict) or not release.get("guid"):
            raise ValidationError("Release payload with a guid is required")
        if not self.upstream.is_configured(service):
            raise NotConfiguredError(service)

        result = await self.upstream.request(
            service,
            self.upstream.endpoint(service, "release"),
            method="POST",
            body=release,
            timeout=self.settings.release_search_timeout,
        )
        logger.info(
            f"Grabbed release {release.get('title') or release['guid']} via {service}",
            extra={"service": service},
        )
        return {"ok": True, "service": service, "result": result}

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def _service_logs(self, service: str):
        if service == "bazarr":
            endpoint = self.upstream.endpoint(service, "system/logs")
        else:
            query = f"page=1&pageSize={LOG_PAGE_SIZE}&sortKey=time&sortDirection=descending"
            endpoint = self.upstream.endpoint(service, f"log?{query}")
        payload = await self.upstream.request(service, endpoint)
        return [normalize_log_entry(service, entry) for entry in extract_records(payload)]

    async def error_logs(
        self,
        service: str = "all",
        level: str = "all",
        search: str = "",
    ) -> Dict[str, Any]:
        """Merged logs of every configured source, newest first, capped."""
        service = (service or "all").strip().lower()
        level = (level or "all").strip().lower()
        search = (search or "").strip().lower()

        if level != "all" and level not in LOG_LEVELS:
            raise ValidationError(f"Unknown log level: {level}")

        sources = self.services()
        targets = sources if service == "all" else [s for s in sources if s == service]
        if not targets:
            return {"items": [], "errors": []}

        outcomes = await settle(*(
            self.downloads.get_logs() if target == DOWNLOAD_CLIENT else self._service_logs(target)
            for target in targets
        ))

        entries = []
        errors = []
        for target, outcome in zip(targets, outcomes):
            if outcome.ok:
                entries.extend(outcome.value)
            else:
                errors.append({"service": target, "message": str(outcome.error)})

        entries = sort_logs(entries)
        if level != "all":
            entries = [e for e in entries if e.level == level]
        if search:
            entries = [e for e in entries if search in e.message.lower()]

        return {
            "items": [e.to_dict() for e in entries[:MAX_LOG_ENTRIES]],
            "errors": errors,
        }

    # ------------------------------------------------------------------
    # Legacy category dashboard
    # ------------------------------------------------------------------

    async def _category_items(self, service: str) -> List[Dict[str, Any]]:
        status_outcome, queue_outcome = await settle(
            self.upstream.request_with_fallback(service, self.upstream.status_endpoints(service)),
            self.upstream.request(
                service,
                self.upstream.endpoint(
                    service,
                    "queue?page=1&pageSize=50&sortKey=timeleft&sortDirection=ascending",
                ),
            ),
        )

        items = []
        if status_outcome.ok and isinstance(status_outcome.value, dict):
            status = status_outcome.value
            items.append({
                "id": f"status-{service}",
                "service": service,
                "source": "System",
                "title": f"{status.get('appName') or service} v{status.get('version') or '?'}",
                "summary": f"Status: {status.get('instanceName') or 'default instance'}",
            })

        if queue_outcome.ok:
            for record in extract_records(queue_outcome.value)[:CATEGORY_QUEUE_LIMIT]:
                series = record.get("series") if isinstance(record.get("series"), dict) else {}
                artist = record.get("artist") if isinstance(record.get("artist"), dict) else {}
                items.append({
                    "id": record.get("id"),
                    "service": service,
                    "source": "Queue",
                    "title": record.get("title") or series.get("title")
                    or artist.get("artistName") or "Queued Item",
                    "summary": first_present(
                        record, "status", "trackedDownloadState", "errorMessage", "outputPath",
                        default="Queued",
                    ),
                })
        return items

    async def category_dashboard(self, category: str) -> Dict[str, Any]:
        services = CATEGORY_TO_SERVICES.get(category)
        if services is None:
            raise ValidationError("Unknown category")

        targets = [s for s in services if self.upstream.is_configured(s)]
        outcomes = await settle(*(self._category_items(s) for s in targets))
        items = []
        for outcome in outcomes:
            items.extend(outcome.unwrap())
        return {"items": items}
