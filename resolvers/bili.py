# Bilibili resolver.
#
# Recognizes bilibili.com video links, b23.tv-style short links and bare
# BV / av ids, resolves them through the public view API and enriches the
# result with a direct play URL (optionally downloaded for short videos).
#
# Config keys (under bili):
#   enabled              – turn the resolver on/off (default true)
#   cookie               – optional Cookie header (e.g. "SESSDATA=...") sent to
#                          the play-url API; unlocks higher qualities
#   fetch_play_url       – look up a direct play URL (default true)
#   quality              – requested qn for the play-url API (default 64, 720P)
#   download_video       – download short videos and attach them (default true)
#   max_duration_seconds – only download videos shorter than this (default 600)
#   max_video_size       – download size cap in bytes (default 100 MB)
#   show_direct_link     – append the play URL as text when no video is attached

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from urllib.parse import quote, urljoin, urlsplit

import services.logger as log
import services.media as media
from services.config_schema import CoercedBool, _ResolverConfig
from services.error import FetchError, InputRejected
from services.message import LinkTarget, PreviewMetadata
from services.miner import extract_first_anchor, format_count, format_duration, truncate_text
from services.url_guard import simplify_url
from resolvers import PLACEHOLDER_TITLE, BaseResolver


class BiliConfig(_ResolverConfig):
    cookie:               str         = ""
    fetch_play_url:       CoercedBool = True
    quality:              int         = 64
    download_video:       CoercedBool = True
    max_duration_seconds: int         = 600
    max_video_size:       int         = 100 * 1024 * 1024
    show_direct_link:     CoercedBool = True

l = log.get_logger()

BILI_DOMAINS = (
    "bilibili.com",
    "www.bilibili.com",
    "m.bilibili.com",
    "b23.tv",
    "bili22.cn",
    "bili23.cn",
    "bili33.cn",
    "bili2233.cn",
)
BILI_SHORT_DOMAINS = frozenset({"b23.tv", "bili22.cn", "bili23.cn", "bili33.cn", "bili2233.cn"})
# Hosts a play url (or any of its redirects) may point at
BILI_MEDIA_DOMAINS = ("bilivideo.com", "bilivideo.cn", "akamaized.net", "hdslb.com")

VIEW_API = "https://api.bilibili.com/x/web-interface/view"
PLAY_URL_API = "https://api.bilibili.com/x/player/playurl"
_REFERER = "https://www.bilibili.com/"

# Bare ids in free text. A preceding "/" or "=" means the id is part of a URL
# that the URL pass already picked up.
_BV_TEXT_RE = re.compile(r"(?<![\w/.=?&#:-])(bv[0-9a-z]{10})(?!\w)", re.IGNORECASE | re.ASCII)
_AV_TEXT_RE = re.compile(r"(?<![\w/.=?&#:-])av(\d+)(?!\w)", re.IGNORECASE | re.ASCII)

_BV_PATH_RE = re.compile(r"/video/(BV[0-9a-zA-Z]{10})", re.IGNORECASE)
_AV_PATH_RE = re.compile(r"/video/av(\d+)", re.IGNORECASE)
_BV_ID_RE = re.compile(r"^BV[0-9a-zA-Z]{10}$")


def normalize_bv(raw: str) -> str:
    return raw if raw.startswith("BV") else f"BV{raw[2:]}"


@dataclass
class BiliStats:
    view:     int | None = None
    like:     int | None = None
    coin:     int | None = None
    favorite: int | None = None
    share:    int | None = None
    danmaku:  int | None = None


@dataclass
class BiliPlayUrl:
    url: str
    backup_urls: list[str] = field(default_factory=list)
    size: int | None = None
    format: str = ""


@dataclass
class BiliVideo:
    title: str
    desc: str
    url: str
    cover: str | None = None
    author: str | None = None
    bvid: str = ""
    aid: int | None = None
    cid: int | None = None
    duration: int | None = None      # seconds
    partition: str | None = None
    pubdate: int | None = None       # unix seconds
    stats: BiliStats | None = None
    play: BiliPlayUrl | None = None
    video_path: Path | None = None
    source_url: str | None = None


def _int_or_none(value) -> int | None:
    # bool is an int subclass; the API never sends booleans for counts
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _str_or_none(value) -> str | None:
    return value if isinstance(value, str) and value else None


def extract_id_from_url(url: str) -> tuple[str, str] | None:
    """``("bv", "BV1xx...")`` or ``("av", "170001")`` from a video URL path."""
    try:
        path = urlsplit(url).path or ""
    except ValueError:
        return None
    match = _BV_PATH_RE.search(path)
    if match:
        return "bv", normalize_bv(match.group(1))
    match = _AV_PATH_RE.search(path)
    if match:
        return "av", match.group(1)
    return None


def is_short_url(url: str) -> bool:
    try:
        return (urlsplit(url).hostname or "").lower() in BILI_SHORT_DOMAINS
    except ValueError:
        return False


def parse_view_payload(payload, id_type: str, id: str) -> BiliVideo | None:
    """Map a ``x/web-interface/view`` response onto a ``BiliVideo``.

    A non-zero ``code`` or a missing ``data`` object means not-found.
    """
    if not isinstance(payload, dict) or payload.get("code") != 0:
        return None
    info = payload.get("data")
    if not isinstance(info, dict):
        return None

    bvid = info.get("bvid") if isinstance(info.get("bvid"), str) else ""
    aid = _int_or_none(info.get("aid"))
    if bvid:
        url = f"https://www.bilibili.com/video/{bvid}"
    elif aid:
        url = f"https://www.bilibili.com/video/av{aid}"
    elif id_type == "bv":
        url = f"https://www.bilibili.com/video/{id}"
    else:
        url = f"https://www.bilibili.com/video/av{id}"

    stat = info.get("stat") if isinstance(info.get("stat"), dict) else {}
    owner = info.get("owner") if isinstance(info.get("owner"), dict) else {}

    return BiliVideo(
        title=info.get("title") if isinstance(info.get("title"), str) else "",
        desc=info.get("desc") if isinstance(info.get("desc"), str) else "",
        url=url,
        cover=_str_or_none(info.get("pic")),
        author=_str_or_none(owner.get("name")),
        bvid=bvid,
        aid=aid,
        cid=_int_or_none(info.get("cid")),
        duration=_int_or_none(info.get("duration")),
        partition=_str_or_none(info.get("tname")),
        pubdate=_int_or_none(info.get("pubdate")),
        stats=BiliStats(
            view=_int_or_none(stat.get("view")),
            like=_int_or_none(stat.get("like")),
            coin=_int_or_none(stat.get("coin")),
            favorite=_int_or_none(stat.get("favorite")),
            share=_int_or_none(stat.get("share")),
            danmaku=_int_or_none(stat.get("danmaku")),
        ),
    )


def parse_play_payload(payload) -> BiliPlayUrl | None:
    if not isinstance(payload, dict) or payload.get("code") != 0:
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    durl = data.get("durl")
    if not isinstance(durl, list) or not durl or not isinstance(durl[0], dict):
        return None
    first = durl[0]
    url = first.get("url")
    if not isinstance(url, str) or not url:
        return None
    backups = first.get("backup_url") or first.get("backupUrl") or []
    return BiliPlayUrl(
        url=url,
        backup_urls=[b for b in backups if isinstance(b, str)] if isinstance(backups, list) else [],
        size=_int_or_none(first.get("size")),
        format=data.get("format") if isinstance(data.get("format"), str) else "",
    )


def format_stats(stats: BiliStats | None) -> str:
    if stats is None:
        return ""
    labels = (
        ("播放", stats.view),
        ("赞", stats.like),
        ("投币", stats.coin),
        ("收藏", stats.favorite),
        ("转发", stats.share),
        ("弹幕", stats.danmaku),
    )
    parts = [f"{label} {format_count(value)}" for label, value in labels if value is not None]
    return f"数据：{' / '.join(parts)}" if parts else ""


def format_pubdate(timestamp: int | None) -> str:
    if not timestamp or timestamp < 0:
        return ""
    try:
        return datetime.fromtimestamp(timestamp).strftime('%Y-%m-%d')
    except (OverflowError, OSError, ValueError):
        return ""


class BiliResolver(BaseResolver[BiliConfig]):

    name = "bili"
    kinds = ("bili", "bili-id")
    source_name = "B站解析"
    domains = BILI_DOMAINS

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def extract_ids(self, text: str) -> list[LinkTarget]:
        targets = [
            LinkTarget(kind="bili-id", id_type="bv", id=normalize_bv(m.group(1)))
            for m in _BV_TEXT_RE.finditer(text or "")
        ]
        targets.extend(
            LinkTarget(kind="bili-id", id_type="av", id=m.group(1))
            for m in _AV_TEXT_RE.finditer(text or "")
        )
        return targets

    def identity(self, url: str | None) -> str | None:
        if not url:
            return None
        found = extract_id_from_url(url)
        return f"{found[0]}:{found[1]}" if found else None

    def cache_keys(self, target: LinkTarget) -> list[str]:
        if target.kind == "bili-id":
            return [f"bili:{target.id_type}:{target.id}", target.key]
        return super().cache_keys(target)

    def alias_keys(self, video: BiliVideo) -> list[str]:
        keys = super().alias_keys(video)
        if video.bvid:
            keys.append(f"bili:bv:{video.bvid}")
        if video.aid:
            keys.append(f"bili:av:{video.aid}")
        return keys

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Referer": _REFERER}

    async def resolve_short_url(self, url: str) -> str | None:
        """Follow a short link; falls back to the first anchor when the host
        answers with an HTML page instead of a redirect."""
        html, final_url = await self.http.get_text(url, guard=self.normalize)
        if final_url and final_url != url:
            return final_url
        href = extract_first_anchor(html)
        return urljoin(url, href) if href else None

    async def resolve_from_url(self, url: str) -> BiliVideo | None:
        normalized = self.normalize(url)
        if not normalized:
            raise InputRejected("invalid url")

        resolved = normalized
        if is_short_url(resolved):
            redirected = await self.resolve_short_url(resolved)
            if not redirected:
                raise FetchError("short url resolve failed")
            safe = self.normalize(redirected)
            if not safe:
                raise InputRejected("redirected url not allowed")
            resolved = safe

        found = extract_id_from_url(resolved)
        if not found:
            raise InputRejected("cannot parse video id")
        return await self.resolve_from_id(*found)

    async def resolve_from_id(self, id_type: str, id: str) -> BiliVideo | None:
        if id_type == "bv":
            if not _BV_ID_RE.match(id or ""):
                raise InputRejected(f"invalid BV id: {id!r}")
            param = f"bvid={quote(id)}"
        elif id_type == "av":
            if not (id or "").isdigit():
                raise InputRejected(f"invalid av id: {id!r}")
            param = f"aid={quote(id)}"
        else:
            raise InputRejected(f"unknown id type: {id_type!r}")

        payload = await self.http.get_json(f"{VIEW_API}?{param}", headers=self._headers())
        video = parse_view_payload(payload, id_type, id)
        if video is None:
            l.debug(f"Bili view API returned nothing for {id_type}:{id}")
            return None

        if self.config.fetch_play_url and video.cid:
            await self._enrich_play_url(video)
        return video

    async def _enrich_play_url(self, video: BiliVideo) -> None:
        ident = f"bvid={quote(video.bvid)}" if video.bvid else f"avid={video.aid}"
        api = (
            f"{PLAY_URL_API}?{ident}&cid={video.cid}&qn={self.config.quality}"
            f"&fnval=1&platform=html5&high_quality=1"
        )
        headers = self._headers()
        if self.config.cookie:
            headers["Cookie"] = self.config.cookie
        try:
            video.play = parse_play_payload(await self.http.get_json(api, headers=headers))
        except Exception as e:
            l.debug(f"Bili play url lookup failed for {video.url}: {log.format_error(e)}")

    async def prepare_media(self, video: BiliVideo) -> None:
        if not (self.config.download_video and video.play and video.duration):
            return
        if video.duration >= self.config.max_duration_seconds:
            l.debug(f"Bili {video.url} too long to download ({video.duration}s)")
            return
        headers = {"Referer": _REFERER}
        for candidate in [video.play.url, *video.play.backup_urls]:
            path = await media.download_video(
                self.http,
                candidate,
                headers=headers,
                max_bytes=self.config.max_video_size,
                format_hint=video.play.format,
                dirs=self.media_dirs,
                stem=video.bvid or f"av{video.aid}",
                domains=BILI_MEDIA_DOMAINS,
            )
            if path is not None:
                video.video_path = path
                return

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def to_preview(self, video: BiliVideo) -> PreviewMetadata:
        ids = []
        if video.bvid:
            ids.append(video.bvid)
        if video.aid:
            ids.append(f"av{video.aid}")

        detail = []
        duration = format_duration(video.duration)
        if duration:
            detail.append(f"时长：{duration}")
        if video.partition:
            detail.append(f"分区：{video.partition}")
        published = format_pubdate(video.pubdate)
        if published:
            detail.append(f"发布：{published}")

        desc = truncate_text(video.desc)
        raw_link = None
        if video.play and video.video_path is None and self.config.show_direct_link:
            raw_link = video.play.url

        return PreviewMetadata(
            title=video.title.strip() or PLACEHOLDER_TITLE,
            url=video.source_url or simplify_url(video.url),
            ids=f"BV号：{' / '.join(ids)}" if ids else None,
            author=f"UP主：{video.author}" if video.author else None,
            detail=" | ".join(detail) or None,
            desc=f"简介：{desc}" if desc else None,
            stats=format_stats(video.stats) or None,
            cover=video.cover,
            video=str(video.video_path) if video.video_path else None,
            raw_link=raw_link,
        )


from resolvers.registry import register
register("bili", BiliConfig, BiliResolver)
