# Media download helpers.
#
#   fetch()          – download into memory (used by the NapCat driver to
#                      inline preview images as base64).
#   download_video() – download a direct media link through the shared
#                      HttpClient and persist it to the first writable
#                      candidate directory.
#
# Both refuse private hosts at the first request and at every redirect.
#
# Usage:
#   from services.media import fetch
#   result = await fetch(url, max_bytes=8_000_000)
#   if result:
#       data, content_type = result

import re
import tempfile
import uuid
from pathlib import Path
from typing import Iterable
from urllib.parse import unquote, urlsplit

import services.logger as log
import services.util as u
from services.http import Guard, HttpClient
from services.url_guard import media_guard

l = log.get_logger()

_DEFAULT_MAX = 10 * 1024 * 1024  # 10 MB
DEFAULT_VIDEO_MAX = 100 * 1024 * 1024

_KNOWN_EXTS = {"mp4", "flv", "mkv", "webm", "mov", "m4v", "m4s", "ts", "jpg", "jpeg", "png", "gif", "webp"}

_MIME_EXT = {
    "image/jpeg":      "jpg",
    "image/png":       "png",
    "image/gif":       "gif",
    "image/webp":      "webp",
    "video/mp4":       "mp4",
    "video/x-flv":     "flv",
    "video/webm":      "webm",
    "video/x-matroska": "mkv",
    "video/quicktime": "mov",
    "video/mp2t":      "ts",
}

_DISPOSITION_RE = re.compile(
    r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?",
    re.IGNORECASE,
)

_client: HttpClient | None = None


def _get_client() -> HttpClient:
    global _client
    if _client is None:
        _client = HttpClient(attempts=1, timeout=60)
    return _client


async def close() -> None:
    global _client
    if _client is not None:
        await _client.close()
    _client = None


async def fetch(
    url: str,
    max_bytes: int = _DEFAULT_MAX,
    *,
    http: HttpClient | None = None,
    guard: Guard | None = None,
) -> tuple[bytes, str] | None:
    """
    Download *url* up to *max_bytes*.

    The URL and every redirect hop go through *guard* (default: any public
    host). Returns ``(data, content_type)`` on success, or ``None`` if the URL
    is refused, the file is oversized or the download fails.
    """
    if not url:
        return None

    guard = guard or media_guard()
    safe = guard(url)
    if not safe:
        l.warning(f"media.fetch: refusing {url!r}")
        return None

    try:
        result = await (http or _get_client()).get(safe, guard=guard, max_bytes=max_bytes)
    except Exception as e:
        l.error(f"media.fetch failed for {url!r}: {log.format_error(e)}")
        return None
    return result.body, result.content_type or "application/octet-stream"



# ---------------------------------------------------------------------------
# Extension inference
# ---------------------------------------------------------------------------

def _ext_of(name: str) -> str | None:
    name = name.rsplit("/", 1)[-1]
    if "." not in name:
        return None
    ext = name.rsplit(".", 1)[-1].lower()
    return ext if ext in _KNOWN_EXTS else None


def ext_from_disposition(value: str | None) -> str | None:
    if not value:
        return None
    match = _DISPOSITION_RE.search(value)
    return _ext_of(unquote(match.group(1).strip())) if match else None


def ext_from_url(url: str) -> str | None:
    try:
        path = urlsplit(url).path
    except ValueError:
        return None
    return _ext_of(path)


def ext_from_mime(content_type: str | None) -> str | None:
    if not content_type:
        return None
    return _MIME_EXT.get(content_type.split(";", 1)[0].strip().lower())


def sniff_ext(data: bytes) -> str | None:
    """Guess a container format from its leading bytes."""
    if len(data) >= 12 and data[4:8] == b"ftyp":
        return "mp4"
    if data[:3] == b"FLV":
        return "flv"
    if data[:4] == b"\x1a\x45\xdf\xa3":
        # EBML header; webm declares its doctype early in the header
        return "webm" if b"webm" in data[:64] else "mkv"
    return None


def ext_from_hint(hint: str | None) -> str | None:
    """Platform format strings such as ``mp4720`` or ``flv360``."""
    if not hint:
        return None
    lowered = hint.lower()
    for ext in ("mp4", "flv", "webm", "mkv"):
        if lowered.startswith(ext):
            return ext
    return None


def infer_extension(
    *,
    disposition: str | None = None,
    url: str = "",
    content_type: str | None = None,
    data: bytes = b"",
    format_hint: str | None = None,
    default: str = "mp4",
) -> str:
    return (
        ext_from_disposition(disposition)
        or ext_from_url(url)
        or ext_from_mime(content_type)
        or sniff_ext(data)
        or ext_from_hint(format_hint)
        or default
    )


# ---------------------------------------------------------------------------
# Persisting
# ---------------------------------------------------------------------------

def default_media_dirs() -> list[Path]:
    return [
        Path(u.get_data_path()) / "media",
        Path(tempfile.gettempdir()) / "linkpreview",
    ]


def persist(data: bytes, filename: str, dirs: Iterable[Path | str]) -> Path | None:
    """Write *data* into the first directory of *dirs* that accepts it."""
    for directory in dirs:
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / filename
            path.write_bytes(data)
            return path.resolve()
        except OSError as e:
            l.debug(f"media.persist: {directory} not writable: {e}")
    return None


async def download_video(
    http: HttpClient,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    max_bytes: int = DEFAULT_VIDEO_MAX,
    format_hint: str | None = None,
    dirs: Iterable[Path | str] | None = None,
    stem: str = "video",
    domains: Iterable[str] | None = None,
) -> Path | None:
    """Download *url* and persist it; ``None`` on any failure.

    *url* and every redirect hop must pass media_guard(*domains*).
    """
    guard = media_guard(domains)
    safe = guard(url)
    if not safe:
        l.warning(f"media.download_video: refusing {url!r}")
        return None

    try:
        result = await http.get(safe, headers=headers, guard=guard, max_bytes=max_bytes)
    except Exception as e:
        l.warning(f"media.download_video failed for {url!r}: {log.format_error(e)}")
        return None

    if not result.body:
        return None

    ext = infer_extension(
        disposition=result.headers.get("content-disposition"),
        url=result.url,
        content_type=result.content_type,
        data=result.body[:64],
        format_hint=format_hint,
    )
    filename = f"{stem}-{uuid.uuid4().hex[:12]}.{ext}"
    path = persist(result.body, filename, dirs if dirs is not None else default_media_dirs())
    if path is None:
        l.warning(f"media.download_video: no writable directory for {filename}")
        return None
    l.info(f"Downloaded {len(result.body)} bytes to {path}")
    return path
