# URL normalization and SSRF guard.
#
# Every URL that is fetched, whether it came from a chat message, a redirect
# Location header or an anchor inside a short-link page, goes through
# normalize_url() with the allow-list of the platform that is fetching it.
# Media links taken from payloads go through media_guard() instead.

import ipaddress
import re
from typing import Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

MAX_URL_LENGTH = 2048

SAFE_SCHEMES = frozenset({"http", "https"})

_PRIVATE_IP_RE = re.compile(r"^(10\.|127\.|169\.254\.|172\.(1[6-9]|2[0-9]|3[01])\.|192\.168\.)")
_PRIVATE_HOST_SUFFIXES = (".local", ".internal")

# Candidate links inside free text. Stops at whitespace, quotes, angle
# brackets and CJK / full-width characters so that "链接，复制本条" style
# share text does not leak into the path.
URL_BODY_CHARS = r"[^\s<>\"'\u3000-\u303f\u4e00-\u9fff\uff00-\uffef]"
URL_EXTRACT_RE = re.compile(
    rf"https?://{URL_BODY_CHARS}+",
    re.IGNORECASE,
)

_TRAILING_PUNCTUATION_RE = re.compile(r"[)\]}>\"'!?.,;]+$")

# Tokens that can only mean the link ended inside a JSON blob or HTML
# attribute. Checked case-insensitively.
_URL_TRUNCATE_TOKENS = (
    '"', "'", ",", ")", "]", "}", "<", ">",
    "%22", "%27", "%2c",
    "&quot;", "&#34;", "&#x22;", "&#44;",
    "\\u0022", "\\u0027", "\\u002c",
    '\\"', "\\'",
)

_HTML_ENTITY_RE = re.compile(r"&(#x?[0-9a-f]+|\w+);", re.IGNORECASE)
_HTML_ENTITY_MAP = {
    "amp": "&",
    "lt": "<",
    "gt": ">",
    "quot": '"',
    "apos": "'",
    "nbsp": " ",
}


def decode_html_entities(value: str) -> str:
    """Decode the small named-entity table plus numeric character references."""
    if not value or "&" not in value:
        return value

    def _replace(match: re.Match) -> str:
        entity = match.group(1)
        if entity[0] == "#":
            is_hex = entity[1:2].lower() == "x"
            digits = entity[2:] if is_hex else entity[1:]
            try:
                return chr(int(digits, 16 if is_hex else 10))
            except (ValueError, OverflowError):
                return match.group(0)
        return _HTML_ENTITY_MAP.get(entity.lower(), match.group(0))

    return _HTML_ENTITY_RE.sub(_replace, value)


def is_private_hostname(hostname: str) -> bool:
    if not hostname:
        return True
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    if _PRIVATE_IP_RE.match(hostname):
        return True
    if hostname.endswith(_PRIVATE_HOST_SUFFIXES):
        return True
    try:
        ip = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_unspecified


def is_allowed_domain(hostname: str, domains: Iterable[str]) -> bool:
    return any(hostname == d or hostname.endswith(f".{d}") for d in domains)


def trim_url_at_delimiter(value: str) -> str:
    lower = value.lower()
    cutoff = len(value)
    for token in _URL_TRUNCATE_TOKENS:
        index = lower.find(token)
        if 0 <= index < cutoff:
            cutoff = index
    return value[:cutoff]


def sanitize_extracted_url(raw: str) -> str | None:
    """Clean a regex hit: drop trailing punctuation, cut at embedded
    delimiters and decode HTML entities."""
    if not raw:
        return None
    cleaned = _TRAILING_PUNCTUATION_RE.sub("", raw).strip()
    if not cleaned:
        return None
    truncated = trim_url_at_delimiter(cleaned)
    if not truncated:
        return None
    return decode_html_entities(truncated)


def extract_candidate_urls(text: str, extra_patterns: Iterable[re.Pattern] = ()) -> list[str]:
    """Return sanitized candidate URLs found in *text*, first occurrence first.

    *extra_patterns* catch scheme-less forms such as ``xhslink.com/a/xyz``.
    """
    if not text:
        return []
    # JSON payloads escape forward slashes
    text = text.replace("\\/", "/")

    found: dict[str, None] = {}
    hits = URL_EXTRACT_RE.findall(text)
    for pattern in extra_patterns:
        hits.extend(pattern.findall(text))
    for raw in hits:
        sanitized = sanitize_extracted_url(raw)
        if sanitized:
            found.setdefault(sanitized)
    return list(found)


def _normalize_single(candidate: str, domains: tuple[str, ...] | None) -> str | None:
    if not candidate or len(candidate) > MAX_URL_LENGTH:
        return None
    if any(ch.isspace() for ch in candidate):
        return None

    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in SAFE_SCHEMES:
        return None

    hostname = (parts.hostname or "").lower().rstrip(".")
    if is_private_hostname(hostname):
        return None
    if domains is not None and not is_allowed_domain(hostname, domains):
        return None

    netloc = hostname if port is None else f"{hostname}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def normalize_url(value: str | None, domains: Iterable[str]) -> str | None:
    """Validate *value* against the SSRF rules and the *domains* allow-list.

    Returns the canonical URL (lower-cased host, no fragment, no userinfo,
    ``/`` for an empty path) or ``None``. Idempotent.
    """
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    domains = tuple(domains)
    if len(trimmed) <= MAX_URL_LENGTH:
        direct = _normalize_single(trimmed, domains)
        if direct:
            return direct

    for candidate in extract_candidate_urls(trimmed):
        normalized = _normalize_single(candidate, domains)
        if normalized:
            return normalized
    return None


def media_guard(domains: Iterable[str] | None = None) -> Callable[[str], str | None]:
    """Guard for direct media links lifted out of API or page payloads.

    The same SSRF rules as normalize_url() but no free-text extraction. With
    *domains* the host must be on that CDN allow-list; without it any public
    host passes.
    """
    allowed = tuple(domains) if domains is not None else None

    def guard(url: str) -> str | None:
        if not url or not url.strip():
            return None
        return _normalize_single(url.strip(), allowed)

    return guard


def canonicalize_for_dedup(url: str | None) -> str:
    """Scheme, host and path only; used as an intra-batch dedup key."""
    if not url:
        return ""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def simplify_url(url: str) -> str:
    """Display form of a link: tracking query parameters dropped."""
    return canonicalize_for_dedup(url) or url
