"""
Reconciliation of library items, manager queues and download-client torrents.

Queue records join library items through their foreign key (seriesId or
movieId) and join torrents through the normalized download hash. Everything
in this module is pure; fetching happens in hydrarr.dashboard.
"""

from typing import Any, Dict, List, Optional

from .config import ServiceConfig
from .normalize import (
    DownloadInfo,
    extract_episode_hint,
    extract_year,
    first_present,
    pick_poster_url,
    queue_download_hash,
    queue_state_from_records,
    int_or_none,
)

STATUS_AVAILABLE = "available"
STATUS_WANTED = "wanted"
STATUS_DOWNLOADING = "downloading"
STATUS_ERROR = "error"

SEASON_AVAILABLE = "available"
SEASON_PARTIAL = "partially_available"
SEASON_WANTED = "wanted"

STATUS_RANK = {
    STATUS_DOWNLOADING: 0,
    STATUS_ERROR: 1,
    STATUS_WANTED: 2,
}


def index_queue_by_item(records: List[Dict[str, Any]], key: str) -> Dict[Any, List[Dict[str, Any]]]:
    """Group queue records by the library item they belong to."""
    index: Dict[Any, List[Dict[str, Any]]] = {}
    for record in records:
        item_id = record.get(key)
        if item_id is None:
            continue
        index.setdefault(item_id, []).append(record)
    return index


def match_downloads(
    records: List[Dict[str, Any]],
    by_hash: Dict[str, DownloadInfo],
) -> List[DownloadInfo]:
    """
    Torrents referenced by ``records``, once per hash.

    A season pack shows up as one queue record per episode, all carrying the
    same download hash; it is still one torrent.
    """
    matched: List[DownloadInfo] = []
    seen = set()
    for record in records:
        torrent_hash = queue_download_hash(record)
        if not torrent_hash or torrent_hash in seen:
            continue
        info = by_hash.get(torrent_hash)
        if info is None:
            continue
        seen.add(torrent_hash)
        matched.append(info)
    return matched


def summarize_downloads(infos: List[DownloadInfo]) -> Optional[Dict[str, Any]]:
    """Aggregate matched torrents into one progress summary, or None when there are none."""
    if not infos:
        return None

    states = {info.state for info in infos}
    etas = [info.etaSeconds for info in infos if info.etaSeconds and info.etaSeconds > 0]
    stalled = [info.stalledSeconds for info in infos if info.isStalled and info.stalledSeconds is not None]
    sizes = [info.sizeGb for info in infos if info.sizeGb is not None]

    return {
        "state": infos[0].state if len(states) == 1 else "mixed",
        "progressPct": round(sum(info.progressPct for info in infos) / len(infos), 2),
        "etaSeconds": min(etas) if etas else None,
        "isStalled": any(info.isStalled for info in infos),
        "stalledSeconds": max(stalled) if stalled else None,
        "peers": sum(info.peers for info in infos),
        "sizeGb": round(sum(sizes), 2) if sizes else None,
        "torrents": len(infos),
    }


def download_items(infos: List[DownloadInfo]) -> List[Dict[str, Any]]:
    items = []
    for info in infos:
        item = info.to_dict()
        item["episodeHint"] = extract_episode_hint(info.name)
        items.append(item)
    return items


def classify_item_status(queue_state: str, missing: bool) -> str:
    """Strict priority: error > downloading > wanted > available."""
    if queue_state == "error":
        return STATUS_ERROR
    if queue_state == "downloading":
        return STATUS_DOWNLOADING
    if missing:
        return STATUS_WANTED
    return STATUS_AVAILABLE


def classify_season_status(file_count: int, total: int) -> str:
    if total > 0 and file_count >= total:
        return SEASON_AVAILABLE
    if file_count > 0:
        return SEASON_PARTIAL
    return SEASON_WANTED


def _episode_counts(statistics: Any) -> tuple[int, int]:
    """(files present, episodes expected) from an *arr statistics block."""
    if not isinstance(statistics, dict):
        return 0, 0
    files = int_or_none(statistics.get("episodeFileCount")) or 0
    total = int_or_none(first_present(statistics, "episodeCount", "totalEpisodeCount")) or 0
    return files, total


def _queue_fields(
    records: List[Dict[str, Any]],
    by_hash: Dict[str, DownloadInfo],
) -> Dict[str, Any]:
    queue_state = queue_state_from_records(records)
    matched = match_downloads(records, by_hash)
    return {
        "queueState": queue_state,
        "download": summarize_downloads(matched),
        "downloadItems": download_items(matched),
    }


def build_series_item(
    series: Dict[str, Any],
    queue_records: List[Dict[str, Any]],
    by_hash: Dict[str, DownloadInfo],
    service: Optional[ServiceConfig] = None,
) -> Dict[str, Any]:
    """One Sonarr series with its file counts, seasons and download state."""
    file_count, total = _episode_counts(series.get("statistics"))
    missing = max(total - file_count, 0)

    seasons = []
    for season in series.get("seasons") or []:
        if not isinstance(season, dict):
            continue
        season_files, season_total = _episode_counts(season.get("statistics"))
        seasons.append({
            "seasonNumber": season.get("seasonNumber"),
            "monitored": bool(season.get("monitored", True)),
            "episodeFileCount": season_files,
            "totalEpisodes": season_total,
            "status": classify_season_status(season_files, season_total),
        })
    seasons.sort(key=lambda s: s["seasonNumber"] if isinstance(s["seasonNumber"], int) else -1)

    queue = _queue_fields(queue_records, by_hash)
    return {
        "id": series.get("id"),
        "title": series.get("title") or "Unknown series",
        "year": extract_year(first_present(series, "year", "firstAired")),
        "posterUrl": pick_poster_url(service, series),
        "status": classify_item_status(queue["queueState"], missing > 0),
        "monitored": bool(series.get("monitored", True)),
        "episodeFileCount": file_count,
        "totalEpisodes": total,
        "missingEpisodes": missing,
        "seasons": seasons,
        **queue,
    }


def movie_summary(status: str, download: Optional[Dict[str, Any]], queue_records: List[Dict[str, Any]]) -> str:
    if status == STATUS_ERROR:
        message = next(
            (r.get("errorMessage") for r in queue_records if r.get("errorMessage")),
            None,
        )
        return f"Download error: {message}" if message else "Download failed"
    if status == STATUS_DOWNLOADING:
        if download:
            return f"Downloading {download['progressPct']:.1f}%"
        return "Queued for download"
    if status == STATUS_WANTED:
        return "Missing file"
    return "Available"


def build_movie_item(
    movie: Dict[str, Any],
    queue_records: List[Dict[str, Any]],
    by_hash: Dict[str, DownloadInfo],
    service: Optional[ServiceConfig] = None,
) -> Dict[str, Any]:
    """One Radarr movie with its file and download state."""
    has_file = bool(movie.get("hasFile"))
    queue = _queue_fields(queue_records, by_hash)
    status = classify_item_status(queue["queueState"], not has_file)
    return {
        "id": movie.get("id"),
        "title": movie.get("title") or "Unknown movie",
        "year": extract_year(first_present(movie, "year", "inCinemas", "releaseDate")),
        "posterUrl": pick_poster_url(service, movie),
        "status": status,
        "monitored": bool(movie.get("monitored", True)),
        "hasFile": has_file,
        "summary": movie_summary(status, queue["download"], queue_records),
        **queue,
    }


def partition_items(items: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """
    Split items into wanted/downloading and available.

    The wanted list is ordered downloading, error, wanted, then anything else;
    ties keep their original order.
    """
    wanted = [item for item in items if item["status"] != STATUS_AVAILABLE]
    available = [item for item in items if item["status"] == STATUS_AVAILABLE]
    wanted.sort(key=lambda item: STATUS_RANK.get(item["status"], 3))
    return {"wantedDownloading": wanted, "available": available}


def reconcile_library(
    kind: str,
    library: List[Dict[str, Any]],
    queue_records: List[Dict[str, Any]],
    by_hash: Dict[str, DownloadInfo],
    service: Optional[ServiceConfig] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Join a library with its manager's queue and the torrent index.

    Args:
        kind: "series" or "movie"
        library: Raw library items from the manager
        queue_records: Raw queue records from the same manager
        by_hash: Torrents indexed by normalized hash
        service: Descriptor used to resolve poster URLs
    """
    if kind == "series":
        key, build = "seriesId", build_series_item
    elif kind == "movie":
        key, build = "movieId", build_movie_item
    else:
        raise ValueError(f"Unknown library kind: {kind}")

    by_item = index_queue_by_item(queue_records, key)
    items = [
        build(raw, by_item.get(raw.get("id"), []), by_hash, service)
        for raw in library
        if isinstance(raw, dict)
    ]
    return partition_items(items)


def build_episode_list(
    episodes: List[Dict[str, Any]],
    season_number: int,
) -> Dict[str, Any]:
    """Episodes of one season, ordered by episode number, with season totals."""
    season = [
        ep for ep in episodes
        if isinstance(ep, dict) and int_or_none(ep.get("seasonNumber")) == season_number
    ]
    season.sort(key=lambda ep: int_or_none(ep.get("episodeNumber")) or 0)

    items = []
    for ep in season:
        has_file = bool(ep.get("hasFile"))
        items.append({
            "id": ep.get("id"),
            "episodeNumber": int_or_none(ep.get("episodeNumber")),
            "title": ep.get("title") or "TBA",
            "airDate": first_present(ep, "airDateUtc", "airDate"),
            "monitored": bool(ep.get("monitored", True)),
            "hasFile": has_file,
            "status": STATUS_AVAILABLE if has_file else STATUS_WANTED,
        })

    file_count = sum(1 for item in items if item["hasFile"])
    return {
        "seasonNumber": season_number,
        "items": items,
        "totalEpisodes": len(items),
        "episodeFileCount": file_count,
        "seasonStatus": classify_season_status(file_count, len(items)),
    }


def sort_releases(releases: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Accepted releases first, then by seeders descending."""
    return sorted(
        releases,
        key=lambda r: (bool(r.get("rejected")), -(r.get("seeders") or 0)),
    )
