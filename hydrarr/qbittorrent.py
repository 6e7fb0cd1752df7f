"""
qBittorrent Web API Client
Reads torrents, version, transfer info and logs from qBittorrent's API v2.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .concurrency import settle
from .config import DOWNLOAD_CLIENT, DownloadClientConfig
from .exceptions import DownloadClientError, LoginError
from .normalize import DownloadInfo, LogEntry, normalize_torrent, to_iso_timestamp
from .upstream import DEFAULT_TIMEOUT, join_url, snippet

logger = logging.getLogger(__name__)

# qBittorrent log message types
LOG_TYPE_NORMAL = 1
LOG_TYPE_INFO = 2
LOG_TYPE_WARNING = 4
LOG_TYPE_CRITICAL = 8


@dataclass
class DownloadListing:
    """Torrents indexed by normalized hash."""
    configured: bool
    by_hash: Dict[str, DownloadInfo] = field(default_factory=dict)

    def get(self, torrent_hash: str) -> Optional[DownloadInfo]:
        return self.by_hash.get(torrent_hash)

    def __len__(self) -> int:
        return len(self.by_hash)


def log_level_from_type(message_type: Any) -> str:
    try:
        code = int(message_type)
    except (TypeError, ValueError):
        return "info"
    if code & LOG_TYPE_CRITICAL:
        return "fatal"
    if code & LOG_TYPE_WARNING:
        return "warn"
    return "info"


class QBittorrentClient:
    """
    Client for the qBittorrent Web API v2.

    API Documentation: https://github.com/qbittorrent/qBittorrent/wiki/WebUI-API-(qBittorrent-4.1)
    API Base Path: /api/v2/{namespace}/{method}

    Every public operation logs in first and sends the returned SID cookie
    explicitly; the cookie jar is disabled so nothing carries over between calls.
    """

    def __init__(self, config: DownloadClientConfig, timeout: float = DEFAULT_TIMEOUT):
        self.config = config
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())
        return self._session

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        path: str,
        method: str = "GET",
        cookie: str = "",
        data: Optional[dict] = None,
        expect_json: bool = True,
    ) -> Any:
        """Make a request to the qBittorrent API."""
        session = await self._get_session()
        url = join_url(self.config.base_url, path)
        headers = {"Referer": self.config.base_url}
        if cookie:
            headers["Cookie"] = cookie

        try:
            async with session.request(
                method,
                url,
                headers=headers,
                data=data,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if not 200 <= response.status < 300:
                    text = snippet(await response.text(errors="replace"))
                    raise DownloadClientError(
                        f"{DOWNLOAD_CLIENT}: {response.status} {text}".rstrip()
                    )
                if expect_json:
                    return await response.json(content_type=None)
                return (await response.text(errors="replace")).strip()

        except asyncio.TimeoutError as e:
            logger.warning(
                f"qBittorrent {path} timed out after {self.timeout:g}s",
                extra={"service": DOWNLOAD_CLIENT, "endpoint": path, "failure": "timeout"},
            )
            raise DownloadClientError(
                f"{DOWNLOAD_CLIENT}: request to {path} timed out after {self.timeout:g}s"
            ) from e
        except aiohttp.ClientError as e:
            logger.warning(
                f"qBittorrent request failed: {e}",
                extra={"service": DOWNLOAD_CLIENT, "endpoint": path, "failure": "connection"},
            )
            raise DownloadClientError(f"{DOWNLOAD_CLIENT}: {e or type(e).__name__}") from e
        except ValueError as e:
            raise DownloadClientError(f"{DOWNLOAD_CLIENT}: invalid JSON from {path}") from e

    async def login(self) -> str:
        """
        Authenticate with qBittorrent.

        Returns:
            "SID=<value>" cookie string, or "" when no credentials are configured
            (instances with local auth bypass accept anonymous requests)
        """
        if not self.configured or not self.config.has_credentials:
            return ""

        session = await self._get_session()
        url = join_url(self.config.base_url, "/api/v2/auth/login")
        try:
            async with session.request(
                "POST",
                url,
                headers={"Referer": self.config.base_url},
                data={"username": self.config.username, "password": self.config.password},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                text = (await response.text(errors="replace")).strip()
                if not 200 <= response.status < 300:
                    logger.error(
                        f"qBittorrent login failed with HTTP {response.status}",
                        extra={"service": DOWNLOAD_CLIENT, "failure": "login"},
                    )
                    raise LoginError(
                        f"{DOWNLOAD_CLIENT}: login failed ({response.status} {snippet(text)})".rstrip(),
                        status=response.status,
                    )
                if text.lower().startswith("fails"):
                    logger.error(
                        "qBittorrent rejected the configured credentials",
                        extra={"service": DOWNLOAD_CLIENT, "failure": "login"},
                    )
                    raise LoginError(f"{DOWNLOAD_CLIENT}: invalid username or password")

                sid = response.cookies.get("SID")
                if sid is None:
                    return ""
                value = getattr(sid, "value", sid)
                return f"SID={value}" if value else ""

        except asyncio.TimeoutError as e:
            raise LoginError(f"{DOWNLOAD_CLIENT}: login timed out after {self.timeout:g}s") from e
        except aiohttp.ClientError as e:
            raise LoginError(f"{DOWNLOAD_CLIENT}: login failed: {e or type(e).__name__}") from e

    async def list_downloads(self, now: Optional[float] = None) -> DownloadListing:
        """All torrents indexed by normalized hash; torrents without a hash are skipped."""
        if not self.configured:
            return DownloadListing(configured=False)

        cookie = await self.login()
        payload = await self._request("/api/v2/torrents/info", cookie=cookie)
        torrents = payload if isinstance(payload, list) else []

        now = time.time() if now is None else now
        listing = DownloadListing(configured=True)
        for raw in torrents:
            info = normalize_torrent(raw, now=now)
            if info is None:
                continue
            listing.by_hash[info.hash] = info
        return listing

    async def get_status(self) -> Dict[str, Any]:
        """Version and transfer state. Never raises."""
        if not self.configured:
            return {
                "service": DOWNLOAD_CLIENT,
                "configured": False,
                "status": "not_configured",
                "message": "Not configured",
            }

        try:
            cookie = await self.login()
        except LoginError as e:
            return self._offline(str(e))

        version_outcome, transfer_outcome = await settle(
            self._request("/api/v2/app/version", cookie=cookie, expect_json=False),
            self._request("/api/v2/transfer/info", cookie=cookie),
        )
        for outcome in (version_outcome, transfer_outcome):
            if not outcome.ok:
                return self._offline(str(outcome.error))

        version = version_outcome.value or None
        transfer = transfer_outcome.value if isinstance(transfer_outcome.value, dict) else {}
        connection_status = transfer.get("connection_status")

        status = {
            "service": DOWNLOAD_CLIENT,
            "configured": True,
            "status": "online",
            "version": version,
            "message": f"qBittorrent {version or '?'} ({connection_status or 'unknown'})",
        }
        if connection_status is not None:
            status["connectionStatus"] = connection_status
        if "queueing" in transfer:
            status["queueing"] = bool(transfer["queueing"])
        return status

    def _offline(self, message: str) -> Dict[str, Any]:
        logger.warning(
            f"qBittorrent status check failed: {message}",
            extra={"service": DOWNLOAD_CLIENT, "failure": "status"},
        )
        return {
            "service": DOWNLOAD_CLIENT,
            "configured": True,
            "status": "offline",
            "message": message,
        }

    async def get_logs(self, last_known_id: int = -1) -> List[LogEntry]:
        """Main log of the download client in the shared log shape."""
        if not self.configured:
            return []

        cookie = await self.login()
        query = urlencode({
            "normal": "true",
            "info": "true",
            "warning": "true",
            "critical": "true",
            "last_known_id": last_known_id,
        })
        payload = await self._request(f"/api/v2/log/main?{query}", cookie=cookie)
        entries = payload if isinstance(payload, list) else []

        logs = []
        for item in entries:
            if not isinstance(item, dict):
                continue
            logs.append(LogEntry(
                service=DOWNLOAD_CLIENT,
                level=log_level_from_type(item.get("type")),
                message=str(item.get("message") or "No message"),
                time=to_iso_timestamp(item.get("timestamp")),
            ))
        return logs
