# Xiaohongshu (RED) resolver.
#
# Note pages are server-rendered with the note embedded several times over:
# og:* tags, sometimes JSON-LD, a "noteData" object, an "imageList" array and
# the window.__INITIAL_STATE__ store. parse_note() layers all of them and keeps
# whatever the page offers.
#
# Config keys (under xhs):
#   enabled          – turn the resolver on/off (default true)
#   download_video   – download the note's video stream and attach it
#                      (default false)
#   max_video_size   – download size cap in bytes (default 100 MB)
#   show_direct_link – append the video stream URL as text when no video is
#                      attached (default true)

import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import services.logger as log
import services.media as media
from services.config_schema import CoercedBool, _ResolverConfig
from services.error import FetchError, InputRejected
from services.http import DESKTOP_USER_AGENT, MOBILE_USER_AGENT
from services.message import PreviewMetadata
from services.url_guard import URL_BODY_CHARS
from services.miner import (
    collect_image_urls,
    deduplicate_urls,
    dig,
    extract_after_marker,
    extract_json_ld,
    extract_json_script_by_id,
    extract_meta,
    extract_state,
    extract_title,
    first_string,
    format_count,
    make_image_heuristic,
    normalize_images,
    normalize_media_url,
    safe_json_parse,
    strip_cdn_suffix,
    sweep_image_urls,
    truncate_text,
)
from resolvers import PLACEHOLDER_TITLE, BaseResolver


class XhsConfig(_ResolverConfig):
    download_video:   CoercedBool = False
    max_video_size:   int         = 100 * 1024 * 1024
    show_direct_link: CoercedBool = True

l = log.get_logger()

XHS_DOMAINS = ("xiaohongshu.com", "www.xiaohongshu.com", "xhslink.com")
XHS_MEDIA_DOMAINS = ("xhscdn.com", "xhscdn.net")

# Scheme-less links such as "xhslink.com/a/AbCd"; a preceding "/" or "."
# means the scheme-ful pattern already matched it.
XHS_BARE_LINK_RE = re.compile(
    r"(?<![\w./])((?:www\.)?(?:"
    + "|".join(re.escape(d) for d in ("xiaohongshu.com", "xhslink.com"))
    + rf")/{URL_BODY_CHARS}+)",
    re.IGNORECASE,
)

_NOTE_PATH_RE = re.compile(r"(?:discovery/item|explore|exploration|notes)/([0-9a-fA-F]{24})")
_NOTE_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
_NOTE_QUERY_KEYS = ("source_note_id", "noteId", "note_id")

_NOTE_MARKERS = ('"noteData":', '"imageList":')
_GONE_MARKERS = ("页面不见了", "内容已被删除", "你访问的页面不见了")
_STATE_MARKERS = (
    "window.__INITIAL_STATE__",
    "window.__PRELOADED_STATE__",
    "window.__INITIAL_DATA__",
)

_USER_AGENTS = (DESKTOP_USER_AGENT, MOBILE_USER_AGENT)
_BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
}

is_likely_xhs_image = make_image_heuristic(("xhscdn.com", "xiaohongshu.com"))


@dataclass
class XhsNote:
    title: str
    desc: str
    url: str
    images: list[str] = field(default_factory=list)
    cover: str | None = None
    author: str | None = None
    note_id: str | None = None
    liked: str | None = None
    collected: str | None = None
    comments: str | None = None
    shares: str | None = None
    video_url: str | None = None
    video_path: Path | None = None
    source_url: str | None = None


# ---------------------------------------------------------------------------
# Note id
# ---------------------------------------------------------------------------

def extract_note_id(url: str | None) -> str | None:
    """24-hex note id from the path or a ``noteId``-style query parameter."""
    if not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    match = _NOTE_PATH_RE.search(parts.path or "")
    if match:
        return match.group(1).lower()
    params = parse_qs(parts.query)
    for key in _NOTE_QUERY_KEYS:
        for value in params.get(key, []):
            if _NOTE_ID_RE.match(value):
                return value.lower()
    return None


# ---------------------------------------------------------------------------
# Page parsing
# ---------------------------------------------------------------------------

def is_likely_note_html(html: str) -> bool:
    if any(marker in html for marker in _GONE_MARKERS):
        return False
    return any(marker in html for marker in _NOTE_MARKERS)


def _select_image_url(info_list: list, scene: str) -> str | None:
    for info in info_list:
        if not isinstance(info, dict) or not isinstance(info.get("url"), str):
            continue
        if not scene or info.get("imageScene") == scene:
            return info["url"]
    return None


def images_from_image_list(items) -> list[str]:
    """Preferred rendition per ``imageList`` entry: WB_DFT, WB_PRV, any, ``url``."""
    if not isinstance(items, list):
        return []
    results = []
    for item in items:
        if not isinstance(item, dict):
            continue
        info_list = item.get("infoList") if isinstance(item.get("infoList"), list) else []
        url = (
            _select_image_url(info_list, "WB_DFT")
            or _select_image_url(info_list, "WB_PRV")
            or _select_image_url(info_list, "")
            or (item["url"] if isinstance(item.get("url"), str) else None)
            or (item["urlDefault"] if isinstance(item.get("urlDefault"), str) else None)
        )
        normalized = normalize_media_url(url)
        if normalized:
            results.append(normalized)
    return results


def extract_note_data(html: str) -> dict | None:
    """The ``"noteData": {...}`` record, unwrapped from ``data.noteData``."""
    parsed = safe_json_parse(extract_after_marker(html, '"noteData":'))
    if not isinstance(parsed, dict):
        return None
    candidate = dig(parsed, "data", "noteData") or parsed.get("noteData") or parsed
    return candidate if isinstance(candidate, dict) else None


def note_from_state(state, note_id: str | None = None) -> dict | None:
    """``note.noteDetailMap[<id>].note`` from an ``__INITIAL_STATE__`` store."""
    detail_map = dig(state, "note", "noteDetailMap")
    if not isinstance(detail_map, dict) or not detail_map:
        return None
    entry = detail_map.get(note_id) if note_id else None
    if entry is None:
        entry = next(iter(detail_map.values()))
    note = dig(entry, "note")
    return note if isinstance(note, dict) and note else None


def _count(value) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return format_count(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        return format_count(int(text)) if text.isdigit() else text
    return None


def _video_url(record: dict) -> str | None:
    streams = dig(record, "video", "media", "stream")
    if isinstance(streams, dict):
        for codec in ("h264", "h265", "av1"):
            url = first_string(dig(streams, codec, 0, "masterUrl"))
            if url:
                return normalize_media_url(url)
    key = first_string(dig(record, "video", "consumer", "originVideoKey"))
    if key:
        return f"https://sns-video-bd.xhscdn.com/{key}"
    return None


def _apply_record(note: XhsNote, record: dict) -> None:
    if first_string(record.get("title")):
        note.title = record["title"]
    if first_string(record.get("desc")):
        note.desc = record["desc"]
    user = record.get("user") if isinstance(record.get("user"), dict) else {}
    note.author = first_string(user.get("nickname"), user.get("nickName")) or note.author
    interact = record.get("interactInfo") if isinstance(record.get("interactInfo"), dict) else {}
    note.liked = _count(interact.get("likedCount")) or note.liked
    note.collected = _count(interact.get("collectedCount")) or note.collected
    note.comments = _count(interact.get("commentCount")) or note.comments
    note.shares = _count(interact.get("shareCount")) or note.shares
    note.video_url = _video_url(record) or note.video_url


def parse_note(html: str, url: str) -> XhsNote:
    """Build an ``XhsNote`` from a note page, most specific source last."""
    meta_title = extract_meta(html, "og:title") or extract_title(html) or ""
    meta_desc = extract_meta(html, "og:description") or extract_meta(html, "description") or ""
    meta_cover = normalize_media_url(
        extract_meta(html, "og:image")
        or extract_meta(html, "og:image:secure_url")
        or extract_meta(html, "image")
    )

    note_id = extract_note_id(url)
    note = XhsNote(title="", desc="", url=url, note_id=note_id)

    json_images: list[str] = []
    json_ld = extract_json_ld(html)
    if json_ld:
        note.title = first_string(json_ld.get("headline"), json_ld.get("alternativeHeadline"), json_ld.get("name")) or ""
        note.desc = first_string(json_ld.get("articleBody"), json_ld.get("description")) or ""
        json_images = normalize_images(json_ld.get("image"))

    states = extract_state(html, _STATE_MARKERS)
    state_note = None
    for state in states:
        state_note = note_from_state(state, note_id)
        if state_note:
            _apply_record(note, state_note)
            break

    note_data = extract_note_data(html)
    if note_data:
        _apply_record(note, note_data)

    images = images_from_image_list(safe_json_parse(extract_after_marker(html, '"imageList":', "[")))
    if not images and state_note:
        images = images_from_image_list(state_note.get("imageList"))
    if not images:
        images = json_images
    if not images:
        for state in [extract_json_script_by_id(html, "__NEXT_DATA__"), *states]:
            if state is not None:
                images.extend(collect_image_urls(state, 6, is_likely_xhs_image))
        if not images:
            images = sweep_image_urls(html, is_likely_xhs_image)
    if not images and meta_cover:
        images = [meta_cover]

    note.title = note.title.strip() or meta_title.strip() or PLACEHOLDER_TITLE
    note.desc = (note.desc.strip() or meta_desc.strip())
    note.images = deduplicate_urls(images, key=strip_cdn_suffix)
    note.cover = note.images[0] if note.images else meta_cover
    return note


def format_stats(note: XhsNote) -> str:
    labels = (("赞", note.liked), ("收藏", note.collected), ("评论", note.comments), ("分享", note.shares))
    parts = [f"{label} {value}" for label, value in labels if value]
    return f"互动：{' / '.join(parts)}" if parts else ""


class XhsResolver(BaseResolver[XhsConfig]):

    name = "xhs"
    kinds = ("xhs",)
    source_name = "小红书解析"
    domains = XHS_DOMAINS
    bare_link_patterns = (XHS_BARE_LINK_RE,)

    def identity(self, url: str | None) -> str | None:
        return extract_note_id(url)

    async def fetch_note_html(self, url: str) -> tuple[str, str]:
        """Desktop UA first, then mobile; each gets the client's retries."""
        last_error: Exception | None = None
        for user_agent in _USER_AGENTS:
            headers = {**_BASE_HEADERS, "User-Agent": user_agent}
            try:
                return await self.http.get_text(
                    url,
                    headers=headers,
                    guard=self.normalize,
                    check=is_likely_note_html,
                )
            except InputRejected:
                raise
            except Exception as e:
                last_error = e
                l.debug(f"XHS fetch with {user_agent[:24]}... failed: {log.format_error(e)}")
        raise last_error if last_error else FetchError("request failed")

    async def resolve_from_url(self, url: str) -> XhsNote | None:
        normalized = self.normalize(url)
        if not normalized:
            raise InputRejected("invalid url")
        html, final_url = await self.fetch_note_html(normalized)
        note = parse_note(html, self.normalize(final_url) or normalized)
        if note.note_id is None:
            note.note_id = extract_note_id(normalized)
        return note

    def alias_keys(self, note: XhsNote) -> list[str]:
        keys = super().alias_keys(note)
        if note.note_id and f"xhs:{note.note_id}" not in keys:
            keys.append(f"xhs:{note.note_id}")
        return keys

    def canonical_key(self, note: XhsNote) -> str:
        if note.note_id:
            return f"xhs:{note.note_id}"
        return super().canonical_key(note)

    async def prepare_media(self, note: XhsNote) -> None:
        if not (self.config.download_video and note.video_url):
            return
        note.video_path = await media.download_video(
            self.http,
            note.video_url,
            headers={"Referer": "https://www.xiaohongshu.com/"},
            max_bytes=self.config.max_video_size,
            dirs=self.media_dirs,
            stem=f"xhs-{note.note_id or 'note'}",
            domains=XHS_MEDIA_DOMAINS,
        )

    def to_preview(self, note: XhsNote) -> PreviewMetadata:
        desc = truncate_text(note.desc)
        raw_link = None
        if note.video_url and note.video_path is None and self.config.show_direct_link:
            raw_link = note.video_url
        return PreviewMetadata(
            title=note.title,
            url=note.source_url or note.url,
            author=f"作者：{note.author}" if note.author else None,
            desc=f"内容：{desc}" if desc else None,
            stats=format_stats(note) or None,
            cover=note.cover,
            images=note.images,
            video=str(note.video_path) if note.video_path else None,
            raw_link=raw_link,
        )


from resolvers.registry import register
register("xhs", XhsConfig, XhsResolver)
