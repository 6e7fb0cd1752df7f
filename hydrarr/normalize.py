"""
Normalization of upstream payloads.

Every function here is pure and total: malformed input degrades to None or a
default instead of raising. Upstream field names vary between services and
API versions, so each entity tries a fixed list of field names in priority
order.
"""

import math
import re
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import ServiceConfig

BYTES_PER_GB = 1024 ** 3

# qBittorrent reports this ETA for torrents that will never finish
QBIT_INFINITE_ETA = 8640000

LOG_LEVELS = ("info", "warn", "error", "fatal")
_LOG_LEVEL_ALIASES = {
    "warning": "warn",
    "critical": "fatal",
}

_FRACTION_RE = re.compile(r"\.(\d+)")
_YEAR_RE = re.compile(r"^\d{4}$")
_SINGLE_EPISODE_RE = re.compile(
    r"(?<![a-z0-9])s(\d{1,2})e(\d{1,3})(?!\d)(?!-?e\d)", re.IGNORECASE
)
_EPISODE_RANGE_RE = re.compile(
    r"(?<![a-z0-9])s(\d{1,2})e(\d{1,3})-?e(\d{1,3})(?!\d)", re.IGNORECASE
)


# =============================================================================
# Primitive helpers
# =============================================================================


def _number(value: Any) -> Optional[float]:
    """Coerce to a finite float, or None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def int_or_none(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def first_present(data: Any, *keys: str, default: Any = None) -> Any:
    """Return the first value under ``keys`` that is neither None nor empty."""
    if not isinstance(data, dict):
        return default
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def extract_records(payload: Any) -> List[Dict[str, Any]]:
    """Pull the record list out of a bare list or a paged ``records``/``data`` object."""
    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, dict):
        records = payload.get("records")
        if not isinstance(records, list):
            records = payload.get("data")
        if not isinstance(records, list):
            return []
    else:
        return []
    return [r for r in records if isinstance(r, dict)]


def bytes_to_gb(value: Any) -> Optional[float]:
    """Convert a byte count to GiB rounded to 2 decimals; None if not a positive number."""
    number = _number(value)
    if number is None or number <= 0:
        return None
    return round(number / BYTES_PER_GB, 2)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # .NET services emit 7 fractional digits; fromisoformat wants 6
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso_timestamp(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.isoformat().replace("+00:00", "Z")


def extract_year(value: Any) -> Optional[int]:
    """Year from a number, a 4-digit string or a date string."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if _YEAR_RE.match(text):
            return int(text)
        parsed = parse_timestamp(text)
        if parsed is not None:
            return parsed.year
    return None


def normalize_hash(value: Any) -> str:
    """Join key between queue records and torrents."""
    if value is None:
        return ""
    return str(value).strip().lower()


def extract_episode_hint(text: Any) -> Optional[str]:
    """``SxxEyy`` or ``SxxEyy-Ezz`` from a release or torrent name."""
    if not isinstance(text, str) or not text:
        return None
    match = _SINGLE_EPISODE_RE.search(text)
    if match:
        return f"S{int(match.group(1)):02d}E{int(match.group(2)):02d}"
    match = _EPISODE_RANGE_RE.search(text)
    if match:
        season, first, last = (int(g) for g in match.groups())
        return f"S{season:02d}E{first:02d}-E{last:02d}"
    return None


# =============================================================================
# Assets
# =============================================================================


def build_asset_url(service: Optional[ServiceConfig], raw_path: Any) -> Optional[str]:
    """Resolve a service-relative asset path against the service's base URL."""
    if not isinstance(raw_path, str) or not raw_path.strip():
        return None
    path = raw_path.strip()
    if path.lower().startswith(("http://", "https://")):
        return path
    if service is None or not service.configured:
        return None
    return f"{service.base_url}/{path.lstrip('/')}"


def pick_poster_url(service: Optional[ServiceConfig], item: Any) -> Optional[str]:
    """Poster image of a library item, falling back to its first image."""
    images = item.get("images") if isinstance(item, dict) else None
    if not isinstance(images, list):
        return None
    images = [image for image in images if isinstance(image, dict)]
    if not images:
        return None

    chosen = next(
        (image for image in images if str(image.get("coverType", "")).lower() == "poster"),
        images[0],
    )
    return build_asset_url(service, first_present(chosen, "url", "remoteUrl"))


# =============================================================================
# Queue
# =============================================================================


def queue_record_has_error(record: Dict[str, Any]) -> bool:
    if record.get("errorMessage"):
        return True
    status = record.get("status")
    return isinstance(status, str) and status.lower() == "failed"


def queue_state_from_records(records: Any) -> str:
    """Error beats downloading beats idle."""
    if not records:
        return "idle"
    if any(isinstance(r, dict) and queue_record_has_error(r) for r in records):
        return "error"
    return "downloading"


def queue_download_hash(record: Dict[str, Any]) -> str:
    return normalize_hash(first_present(record, "downloadId", "trackedDownloadId"))


# =============================================================================
# Logs
# =============================================================================


@dataclass
class LogEntry:
    """A log line from any service, in the shared shape."""
    service: str
    level: str
    message: str
    time: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_level(value: Any) -> str:
    level = str(value or "info").strip().lower()
    level = _LOG_LEVEL_ALIASES.get(level, level)
    return level if level in LOG_LEVELS else "info"


def normalize_log_entry(service: str, item: Any) -> LogEntry:
    item = item if isinstance(item, dict) else {}
    message = first_present(item, "message", "exception", "logger", default="No message")
    raw_time = first_present(item, "time", "timestamp")
    if isinstance(raw_time, (int, float)) and not isinstance(raw_time, bool):
        log_time = to_iso_timestamp(raw_time)
    elif isinstance(raw_time, str):
        log_time = raw_time
    else:
        log_time = None
    return LogEntry(
        service=service,
        level=normalize_level(first_present(item, "level", "type")),
        message=str(message),
        time=log_time,
    )


def log_sort_key(entry: LogEntry) -> float:
    """Epoch seconds of the entry; unknown times count as the epoch."""
    parsed = parse_timestamp(entry.time)
    return parsed.timestamp() if parsed is not None else 0.0


def sort_logs(entries: List[LogEntry]) -> List[LogEntry]:
    """Newest first."""
    return sorted(entries, key=log_sort_key, reverse=True)


# =============================================================================
# Releases
# =============================================================================


def _flatten_reasons(value: Any, out: List[str]) -> None:
    if value is None:
        return
    if isinstance(value, str):
        text = value.strip()
        if text:
            out.append(text)
    elif isinstance(value, dict):
        _flatten_reasons(first_present(value, "reason", "message", "description"), out)
    elif isinstance(value, (list, tuple)):
        for entry in value:
            _flatten_reasons(entry, out)


def extract_rejections(raw: Any) -> List[str]:
    """Human-readable rejection reasons, flattened to a list of strings."""
    if not isinstance(raw, dict):
        return []
    reasons: List[str] = []
    for key in ("rejections", "rejectionReasons", "rejectionReason"):
        _flatten_reasons(raw.get(key), reasons)
    return reasons


def is_rejected_release_raw(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    if raw.get("rejected"):
        return True
    if raw.get("approved") is False:
        return True
    return bool(extract_rejections(raw))


def _release_language(raw: Dict[str, Any]) -> Optional[str]:
    languages = raw.get("languages")
    if isinstance(languages, list):
        names = [
            str(first_present(lang, "name")) if isinstance(lang, dict) else str(lang)
            for lang in languages
            if lang
        ]
        names = [name for name in names if name and name != "None"]
        if names:
            return ", ".join(names)
    language = raw.get("language")
    if isinstance(language, dict):
        return first_present(language, "name")
    if isinstance(language, str) and language:
        return language
    return None


def _release_quality(raw: Dict[str, Any]) -> Optional[str]:
    quality = raw.get("quality")
    if isinstance(quality, dict):
        inner = quality.get("quality")
        if isinstance(inner, dict) and inner.get("name"):
            return inner["name"]
        return first_present(quality, "name")
    if isinstance(quality, str) and quality:
        return quality
    return None


def normalize_release(service: str, raw: Any) -> Dict[str, Any]:
    """Release candidate in the UI shape; ``full`` keeps the raw payload for grabbing."""
    raw = raw if isinstance(raw, dict) else {}
    size = _number(raw.get("size"))
    rejections = extract_rejections(raw)
    return {
        "service": service,
        "guid": raw.get("guid"),
        "indexerId": raw.get("indexerId"),
        "title": first_present(raw, "title", "releaseTitle", default=""),
        "indexer": raw.get("indexer"),
        "age": first_present(raw, "age", "ageHours"),
        "size": int(size) if size is not None else None,
        "sizeGb": bytes_to_gb(size),
        "seeders": int_or_none(raw.get("seeders")),
        "leechers": int_or_none(raw.get("leechers")),
        "language": _release_language(raw),
        "quality": _release_quality(raw),
        "protocol": raw.get("protocol"),
        "rejected": is_rejected_release_raw(raw),
        "rejections": rejections,
        "full": raw,
    }


# =============================================================================
# Torrents
# =============================================================================


@dataclass
class DownloadInfo:
    """One download-client torrent, keyed by its normalized hash."""
    hash: str
    name: str
    state: str
    progressPct: float
    etaSeconds: Optional[int]
    isStalled: bool
    stalledSeconds: Optional[int]
    peers: int
    sizeGb: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_torrent(raw: Any, now: Optional[float] = None) -> Optional[DownloadInfo]:
    """qBittorrent torrent record to DownloadInfo; None when it has no hash."""
    if not isinstance(raw, dict):
        return None
    torrent_hash = normalize_hash(first_present(raw, "hash", "infohash_v1"))
    if not torrent_hash:
        return None

    now = time.time() if now is None else now
    state = str(raw.get("state") or "unknown")
    progress = _number(raw.get("progress")) or 0.0
    eta = int_or_none(raw.get("eta"))
    if eta is None or eta <= 0 or eta >= QBIT_INFINITE_ETA:
        eta = None

    is_stalled = "stalled" in state.lower()
    stalled_seconds = None
    last_activity = _number(raw.get("last_activity"))
    if is_stalled and last_activity and last_activity > 0:
        stalled_seconds = max(0, int(now - last_activity))

    peers = (int_or_none(raw.get("num_seeds")) or 0) + (int_or_none(raw.get("num_leechs")) or 0)

    return DownloadInfo(
        hash=torrent_hash,
        name=str(raw.get("name") or ""),
        state=state,
        progressPct=round(max(0.0, min(progress, 1.0)) * 100, 2),
        etaSeconds=eta,
        isStalled=is_stalled,
        stalledSeconds=stalled_seconds,
        peers=peers,
        sizeGb=bytes_to_gb(first_present(raw, "size", "total_size")),
    )
