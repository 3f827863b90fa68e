# HTML / embedded-JSON metadata mining shared by the platform resolvers.
#
# Share pages are not valid documents in any useful sense: the interesting
# data lives in og:* tags, JSON-LD blocks and JS object literals assigned
# inside inline <script> tags. Each helper here returns an empty result
# rather than raising when its marker is missing, so resolvers can layer
# them and keep whatever the page does offer.

import json
import re
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit

from services.url_guard import SAFE_SCHEMES, decode_html_entities

MAX_CONTENT_LENGTH = 260

_UNICODE_ESCAPE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")
_TITLE_RE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
_JSON_LD_RE = re.compile(
    r"<script[^>]*type=[\"']application/ld\+json[\"'][^>]*>([\s\S]*?)</script>",
    re.IGNORECASE,
)
_META_CONTENT_RE = re.compile(r"content=(?:\"([^\"]*)\"|'([^']*)')", re.IGNORECASE)
_ANCHOR_HREF_RE = re.compile(r"<a\s+(?:[^>]*?\s+)?href=\"([^\"]*)\"", re.IGNORECASE)

_RAW_URL_RE = re.compile(r"https?://[^\"'<>\\\s]+", re.IGNORECASE)
_PROTOCOL_RELATIVE_RE = re.compile(r"(?<![:\w])//[^\"'<>\\\s]+", re.IGNORECASE)
_ESCAPED_URL_RE = re.compile(r"https?:\\u002F\\u002F[^\"'<>\s]+", re.IGNORECASE)

_IMAGE_EXT_RE = re.compile(r"\.(jpg|jpeg|png|webp|gif)(\?|#|$)", re.IGNORECASE)
_ASSET_EXTS = (".js", ".css", ".svg")

_IMAGE_KEY_HINT_RE = re.compile(r"image|images|imageList|pic|pics|photo|cover", re.IGNORECASE)
_IMAGE_FIELD_KEYS = ("url", "origin", "originUrl", "original", "originalUrl", "src", "path", "file")


# ---------------------------------------------------------------------------
# String decoding
# ---------------------------------------------------------------------------

def decode_unicode_escapes(value: str) -> str:
    """Undo ``\\uXXXX`` escapes left in values cut out of inline scripts."""
    if not value or "\\u" not in value:
        return value
    return _UNICODE_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), value)


def truncate_text(value: str | None, max_length: int = MAX_CONTENT_LENGTH) -> str:
    trimmed = (value or "").strip()
    if len(trimmed) <= max_length:
        return trimmed
    return f"{trimmed[:max_length].rstrip()}..."


def first_string(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def format_count(value: int | float) -> str:
    """Compact Chinese count: 1.5亿, 2.5万, 9999."""
    # anything that rounds to 10000万 is shown as 亿
    if value >= 100_000_000 or float(f"{value / 10_000:.1f}") >= 10_000:
        return f"{_format_unit(value / 100_000_000)}亿"
    if value >= 10_000:
        return f"{_format_unit(value / 10_000)}万"
    return str(int(value))


def _format_unit(value: float) -> str:
    fixed = f"{value:.1f}"
    return fixed[:-2] if fixed.endswith(".0") else fixed


def format_duration(seconds: int | float | None) -> str:
    if not seconds or seconds <= 0:
        return ""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


# ---------------------------------------------------------------------------
# Balanced-bracket scanning
# ---------------------------------------------------------------------------

def scan_balanced(text: str, start: int) -> str | None:
    """Return the balanced ``{...}`` / ``[...]`` literal starting at *start*.

    A depth counter over both bracket kinds, with quote and backslash
    tracking so that brackets inside string literals are ignored. Returns
    ``None`` when *start* is not an opening bracket or the literal never
    closes.
    """
    if start < 0 or start >= len(text) or text[start] not in "{[":
        return None

    depth = 0
    in_string = False
    escape_next = False
    quote_char = ""
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape_next:
                escape_next = False
            elif ch == "\\":
                escape_next = True
            elif ch == quote_char:
                in_string = False
            continue
        if ch == '"' or ch == "'":
            in_string = True
            quote_char = ch
        elif ch == "{" or ch == "[":
            depth += 1
        elif ch == "}" or ch == "]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_after_marker(html: str, marker: str, opener: str = "{") -> str | None:
    """Find *marker* and return the balanced literal opened by the next *opener*."""
    index = html.find(marker)
    if index == -1:
        return None
    start = html.find(opener, index + len(marker))
    if start == -1:
        return None
    return scan_balanced(html, start)


def extract_json_assignment(html: str, marker: str) -> str | None:
    """Object literal assigned to *marker*, e.g. ``window.__INITIAL_STATE__ = {...}``."""
    index = html.find(marker)
    if index == -1:
        return None
    equal = html.find("=", index + len(marker))
    if equal == -1:
        return None
    start = html.find("{", equal)
    if start == -1:
        return None
    return scan_balanced(html, start)


# ---------------------------------------------------------------------------
# JSON parsing
# ---------------------------------------------------------------------------

def sanitize_loose_json(value: str) -> str:
    """Rewrite bare JS ``undefined`` tokens (outside strings) to ``null``."""
    if "undefined" not in value:
        return value
    out: list[str] = []
    in_string = False
    escape_next = False
    quote_char = ""
    i = 0
    length = len(value)
    while i < length:
        ch = value[i]
        if in_string:
            out.append(ch)
            if escape_next:
                escape_next = False
            elif ch == "\\":
                escape_next = True
            elif ch == quote_char:
                in_string = False
            i += 1
            continue
        if ch == '"' or ch == "'":
            in_string = True
            quote_char = ch
            out.append(ch)
            i += 1
            continue
        if value.startswith("undefined", i):
            out.append("null")
            i += len("undefined")
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def safe_json_parse(value: str | None) -> Any:
    """``json.loads`` that returns ``None`` instead of raising."""
    if not value:
        return None
    try:
        return json.loads(value)
    except (ValueError, TypeError):
        pass
    sanitized = sanitize_loose_json(value)
    if sanitized == value:
        return None
    try:
        return json.loads(sanitized)
    except (ValueError, TypeError):
        return None


def extract_json_script_by_id(html: str, script_id: str) -> Any:
    pattern = re.compile(
        rf"<script[^>]+id=[\"']{re.escape(script_id)}[\"'][^>]*>([\s\S]*?)</script>",
        re.IGNORECASE,
    )
    match = pattern.search(html)
    if not match:
        return None
    return safe_json_parse(match.group(1).strip())


def extract_state(html: str, markers: Iterable[str]) -> list[Any]:
    """Parsed app-state objects for every marker assignment found in *html*."""
    found = []
    for marker in markers:
        parsed = safe_json_parse(extract_json_assignment(html, marker))
        if parsed is not None:
            found.append(parsed)
    return found


def dig(value: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists; ``None`` as soon as a step is missing."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, list) or not -len(value) <= step < len(value):
                return None
            value = value[step]
        else:
            if not isinstance(value, dict):
                return None
            value = value.get(step)
    return value


def find_first_string_by_keys(value: Any, keys: Iterable[str], max_depth: int = 5) -> str | None:
    """Depth-first search for the first string stored under any of *keys*."""
    keys = tuple(keys)
    if value is None or max_depth < 0:
        return None
    if isinstance(value, list):
        for item in value:
            found = find_first_string_by_keys(item, keys, max_depth - 1)
            if found:
                return found
        return None
    if not isinstance(value, dict):
        return None
    for key in keys:
        if isinstance(value.get(key), str):
            return value[key]
    for child in value.values():
        found = find_first_string_by_keys(child, keys, max_depth - 1)
        if found:
            return found
    return None


# ---------------------------------------------------------------------------
# Tag-level extraction
# ---------------------------------------------------------------------------

def extract_meta(html: str, key: str) -> str | None:
    """``content`` of ``<meta property=key>`` or ``<meta name=key>``, entity-decoded."""
    pattern = re.compile(
        rf"<meta[^>]+(?:property|name)=[\"']{re.escape(key)}[\"'][^>]*>",
        re.IGNORECASE,
    )
    match = pattern.search(html)
    if not match:
        return None
    content = _META_CONTENT_RE.search(match.group(0))
    if not content:
        return None
    value = content.group(1) if content.group(1) is not None else content.group(2)
    value = (value or "").strip()
    return decode_html_entities(value) if value else None


def extract_title(html: str) -> str | None:
    match = _TITLE_RE.search(html)
    if not match:
        return None
    value = decode_html_entities(match.group(1).strip())
    return value or None


def extract_first_anchor(html: str) -> str | None:
    match = _ANCHOR_HREF_RE.search(html)
    if not match or not match.group(1):
        return None
    return decode_html_entities(match.group(1))


def _is_useful_json_ld(record: dict) -> bool:
    return any(record.get(k) for k in ("headline", "name", "description", "articleBody", "image"))


def _find_json_ld_candidate(data: Any) -> dict | None:
    if isinstance(data, list):
        for item in data:
            candidate = _find_json_ld_candidate(item)
            if candidate:
                return candidate
        return None
    if isinstance(data, dict):
        if data.get("@graph"):
            candidate = _find_json_ld_candidate(data["@graph"])
            if candidate:
                return candidate
        if _is_useful_json_ld(data):
            return data
    return None


def extract_json_ld(html: str) -> dict | None:
    """First JSON-LD object exposing a headline, name, description, body or image."""
    for match in _JSON_LD_RE.finditer(html):
        content = match.group(1).strip()
        if not content:
            continue
        candidate = _find_json_ld_candidate(safe_json_parse(content))
        if candidate:
            return candidate
    return None


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

def normalize_media_url(value: str | None) -> str | None:
    """Absolute http(s) form of a media URL; protocol-relative gets https."""
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    if trimmed.startswith("//"):
        trimmed = f"https:{trimmed}"
    try:
        parts = urlsplit(trimmed)
    except ValueError:
        return None
    if parts.scheme.lower() not in SAFE_SCHEMES or not parts.netloc:
        return None
    return parts.geturl()


def normalize_images(value: Any) -> list[str]:
    """Accepts the shapes JSON-LD uses for ``image``: str, list, {url: ...}."""
    if not value:
        return []
    if isinstance(value, str):
        values = [value]
    elif isinstance(value, list):
        values = value
    elif isinstance(value, dict):
        url = value.get("url")
        values = url if isinstance(url, list) else [url]
    else:
        return []

    results = []
    for item in values:
        if isinstance(item, dict):
            item = item.get("url")
        if not isinstance(item, str):
            continue
        normalized = normalize_media_url(item)
        if normalized:
            results.append(normalized)
    return results


def make_image_heuristic(cdn_hosts: Iterable[str]) -> Callable[[str], bool]:
    """Build an ``is_likely_image(url)`` predicate for a platform's CDN hosts."""
    cdn_hosts = tuple(cdn_hosts)

    def is_likely_image(url: str) -> bool:
        if _IMAGE_EXT_RE.search(url.lower()):
            return True
        try:
            parts = urlsplit(url)
        except ValueError:
            return False
        host = (parts.hostname or "").lower()
        if any(cdn in host for cdn in cdn_hosts):
            return not parts.path.lower().endswith(_ASSET_EXTS)
        return False

    return is_likely_image


def collect_image_urls(value: Any, max_depth: int, is_image: Callable[[str], bool]) -> list[str]:
    """Walk a parsed state tree collecting URLs stored under image-ish keys."""
    results: list[str] = []
    visited: set[int] = set()

    def push(url: Any):
        if not isinstance(url, str):
            return
        normalized = normalize_media_url(url)
        if normalized and is_image(normalized):
            results.append(normalized)

    def extract_from(node: Any):
        if isinstance(node, str):
            push(node)
        elif isinstance(node, list):
            for item in node:
                extract_from(item)
        elif isinstance(node, dict):
            for key in _IMAGE_FIELD_KEYS:
                push(node.get(key))
            if isinstance(node.get("url"), list):
                for url in node["url"]:
                    push(url)

    def walk(node: Any, depth: int):
        if node is None or depth < 0:
            return
        if isinstance(node, str):
            push(node)
            return
        if not isinstance(node, (dict, list)) or id(node) in visited:
            return
        visited.add(id(node))
        if isinstance(node, list):
            for item in node:
                walk(item, depth - 1)
            return
        for key, child in node.items():
            if _IMAGE_KEY_HINT_RE.search(str(key)):
                extract_from(child)
            walk(child, depth - 1)

    walk(value, max_depth)
    return results


def sweep_image_urls(html: str, is_image: Callable[[str], bool]) -> list[str]:
    """Last-resort regex sweep for absolute, protocol-relative and
    ``\\u002F``-escaped image URLs anywhere in the page."""
    results: list[str] = []
    for match in _RAW_URL_RE.findall(html):
        decoded = decode_unicode_escapes(match)
        if is_image(decoded):
            results.append(decoded)
    for match in _PROTOCOL_RELATIVE_RE.findall(html):
        normalized = normalize_media_url(decode_unicode_escapes(match))
        if normalized and is_image(normalized):
            results.append(normalized)
    for match in _ESCAPED_URL_RE.findall(html):
        decoded = decode_unicode_escapes(match)
        if is_image(decoded):
            results.append(decoded)
    return deduplicate_urls(results)


def deduplicate_urls(urls: Iterable[str], key: Callable[[str], str] | None = None) -> list[str]:
    """Order-preserving dedup. *key* maps a URL to its dedup identity; the
    original URL is what gets returned."""
    seen: set[str] = set()
    results = []
    for url in urls:
        trimmed = (url or "").strip()
        if not trimmed:
            continue
        identity = key(trimmed) if key else trimmed
        if identity in seen:
            continue
        seen.add(identity)
        results.append(trimmed)
    return results


def strip_cdn_suffix(url: str, marker: str = "!") -> str:
    """``http://cdn/x.jpg!nd_dft_wlteh_webp_3`` -> ``http://cdn/x.jpg``."""
    return url.split(marker, 1)[0] if marker in url else url
