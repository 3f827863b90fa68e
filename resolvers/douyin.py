# Douyin resolver.
#
# Resolution goes through a third-party parsing API first (code 200 means
# success) and falls back to the public share page, where the item lives in
# window._ROUTER_DATA, with og:* tags as the last resort.
#
# Config keys (under douyin):
#   enabled          – turn the resolver on/off (default true)
#   api_url          – parsing API; the share link is passed as ?url=
#                      (empty disables the API)
#   page_fallback    – scrape the share page when the API has nothing
#                      (default true)
#   download_video   – download the video and attach it (default false)
#   max_video_size   – download size cap in bytes (default 100 MB)
#   show_direct_link – append the play URL as text when no video is attached

import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, urlsplit

import services.logger as log
import services.media as media
from services.config_schema import CoercedBool, _ResolverConfig
from services.error import InputRejected
from services.http import MOBILE_USER_AGENT
from services.message import PreviewMetadata
from services.miner import (
    dig,
    extract_json_assignment,
    extract_meta,
    first_string,
    format_count,
    format_duration,
    normalize_media_url,
    safe_json_parse,
    truncate_text,
)
from resolvers import PLACEHOLDER_TITLE, BaseResolver


class DouyinConfig(_ResolverConfig):
    api_url:          str         = "https://apis.jxcxin.cn/api/douyin"
    page_fallback:    CoercedBool = True
    download_video:   CoercedBool = False
    max_video_size:   int         = 100 * 1024 * 1024
    show_direct_link: CoercedBool = True

l = log.get_logger()

DOUYIN_DOMAINS = ("douyin.com", "www.douyin.com", "v.douyin.com", "iesdouyin.com", "www.iesdouyin.com")
DOUYIN_MEDIA_DOMAINS = (
    "douyinvod.com",
    "douyinpic.com",
    "douyincdn.com",
    "zjcdn.com",
    "snssdk.com",
    "amemv.com",
    "douyin.com",
    "iesdouyin.com",
)

_SHORT_HOSTS = frozenset({"v.douyin.com"})
_SHARE_PATH_RE = re.compile(r"^/(?:video|note)/\d+|^/share/(?:video|note)/\d+")
_ITEM_ID_RE = re.compile(r"/(?:share/)?(?:video|note)/(\d+)")


@dataclass
class DouyinVideo:
    title: str
    desc: str
    url: str                       # share link the item was resolved from
    author: str | None = None
    cover: str | None = None
    video_url: str | None = None
    duration_ms: int | None = None
    aweme_id: str | None = None
    digg_count: int | None = None
    comment_count: int | None = None
    collect_count: int | None = None
    share_count: int | None = None
    video_path: Path | None = None
    source_url: str | None = None


def extract_item_id(url: str | None) -> str | None:
    if not url:
        return None
    try:
        path = urlsplit(url).path or ""
    except ValueError:
        return None
    match = _ITEM_ID_RE.search(path)
    return match.group(1) if match else None


def is_share_link(url: str) -> bool:
    """Short links, or item pages on the main and share hosts."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    if host in _SHORT_HOSTS:
        return len(parts.path or "") > 1
    return bool(_SHARE_PATH_RE.search(parts.path or ""))


def _int_or_none(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def parse_api_payload(payload, url: str) -> DouyinVideo | None:
    if not isinstance(payload, dict):
        return None
    info = payload.get("data")
    if payload.get("code") != 200 or not isinstance(info, dict):
        l.warning(f"Douyin API returned code {payload.get('code')}: {payload.get('msg')}")
        return None
    title = first_string(info.get("title")) or ""
    return DouyinVideo(
        title=title or PLACEHOLDER_TITLE,
        desc=title,
        url=url,
        author=first_string(info.get("author")),
        cover=normalize_media_url(first_string(info.get("cover"))),
        video_url=normalize_media_url(first_string(info.get("url"))),
        aweme_id=extract_item_id(url),
        digg_count=_int_or_none(info.get("like")),
    )


def _find_item(router_data) -> dict | None:
    """``loaderData.*.videoInfoRes.item_list[0]`` from ``window._ROUTER_DATA``."""
    loader = dig(router_data, "loaderData")
    if not isinstance(loader, dict):
        return None
    for page in loader.values():
        item = dig(page, "videoInfoRes", "item_list", 0)
        if isinstance(item, dict):
            return item
    return None


def parse_share_page(html: str, url: str) -> DouyinVideo | None:
    """Item data from a share page; ``None`` when the page carries neither
    router data nor og:* tags."""
    item = _find_item(safe_json_parse(extract_json_assignment(html, "window._ROUTER_DATA")))
    if item is not None:
        desc = first_string(item.get("desc")) or ""
        play = first_string(dig(item, "video", "play_addr", "url_list", 0))
        stats = item.get("statistics") if isinstance(item.get("statistics"), dict) else {}
        return DouyinVideo(
            title=desc or PLACEHOLDER_TITLE,
            desc=desc,
            url=url,
            author=first_string(dig(item, "author", "nickname")),
            cover=normalize_media_url(first_string(dig(item, "video", "cover", "url_list", 0))),
            # playwm serves the watermarked stream
            video_url=normalize_media_url(play.replace("playwm", "play")) if play else None,
            duration_ms=_int_or_none(dig(item, "video", "duration")),
            aweme_id=first_string(item.get("aweme_id")) or extract_item_id(url),
            digg_count=_int_or_none(stats.get("digg_count")),
            comment_count=_int_or_none(stats.get("comment_count")),
            collect_count=_int_or_none(stats.get("collect_count")),
            share_count=_int_or_none(stats.get("share_count")),
        )

    title = extract_meta(html, "og:title")
    desc = extract_meta(html, "og:description") or extract_meta(html, "description")
    cover = normalize_media_url(extract_meta(html, "og:image"))
    if not (title or desc or cover):
        return None
    return DouyinVideo(
        title=title or PLACEHOLDER_TITLE,
        desc=desc or "",
        url=url,
        cover=cover,
        video_url=normalize_media_url(extract_meta(html, "og:video")),
        aweme_id=extract_item_id(url),
    )


def format_stats(video: DouyinVideo) -> str:
    labels = (
        ("赞", video.digg_count),
        ("评论", video.comment_count),
        ("收藏", video.collect_count),
        ("分享", video.share_count),
    )
    parts = [f"{label} {format_count(value)}" for label, value in labels if value]
    return f"数据：{' / '.join(parts)}" if parts else ""


class DouyinResolver(BaseResolver[DouyinConfig]):

    name = "douyin"
    kinds = ("douyin",)
    source_name = "抖音解析"
    domains = DOUYIN_DOMAINS

    def extract_urls(self, text: str) -> list[str]:
        return [url for url in super().extract_urls(text) if is_share_link(url)]

    def identity(self, url: str | None) -> str | None:
        return extract_item_id(url)

    def alias_keys(self, video: DouyinVideo) -> list[str]:
        keys = super().alias_keys(video)
        if video.aweme_id and f"douyin:{video.aweme_id}" not in keys:
            keys.append(f"douyin:{video.aweme_id}")
        return keys

    def canonical_key(self, video: DouyinVideo) -> str:
        if video.aweme_id:
            return f"douyin:{video.aweme_id}"
        return super().canonical_key(video)

    async def _from_api(self, url: str) -> DouyinVideo | None:
        api = f"{self.config.api_url}?url={quote(url, safe='')}"
        return parse_api_payload(await self.http.get_json(api), url)

    async def _from_share_page(self, url: str) -> DouyinVideo | None:
        html, final_url = await self.http.get_text(
            url,
            headers={"User-Agent": MOBILE_USER_AGENT},
            guard=self.normalize,
        )
        video = parse_share_page(html, url)
        if video is not None and not video.aweme_id:
            video.aweme_id = extract_item_id(final_url)
        return video

    async def resolve_from_url(self, url: str) -> DouyinVideo | None:
        normalized = self.normalize(url)
        if not normalized:
            raise InputRejected("invalid url")

        api_error: Exception | None = None
        video = None
        if self.config.api_url:
            try:
                video = await self._from_api(normalized)
            except Exception as e:
                api_error = e
                l.warning(f"Douyin API failed for {normalized}: {log.format_error(e)}")

        if video is None and self.config.page_fallback:
            video = await self._from_share_page(normalized)
        if video is None and api_error is not None:
            raise api_error
        return video

    async def prepare_media(self, video: DouyinVideo) -> None:
        if not (self.config.download_video and video.video_url):
            return
        video.video_path = await media.download_video(
            self.http,
            video.video_url,
            headers={"User-Agent": MOBILE_USER_AGENT},
            max_bytes=self.config.max_video_size,
            dirs=self.media_dirs,
            stem=f"douyin-{video.aweme_id or 'video'}",
            domains=DOUYIN_MEDIA_DOMAINS,
        )

    def to_preview(self, video: DouyinVideo) -> PreviewMetadata:
        desc = truncate_text(video.desc) if video.desc != video.title else ""
        duration = format_duration(video.duration_ms / 1000) if video.duration_ms else ""
        raw_link = None
        if video.video_url and video.video_path is None and self.config.show_direct_link:
            raw_link = video.video_url
        return PreviewMetadata(
            title=video.title,
            url=video.source_url or video.url,
            author=f"作者：{video.author}" if video.author else None,
            detail=f"时长：{duration}" if duration else None,
            desc=f"简介：{desc}" if desc else None,
            stats=format_stats(video) or None,
            cover=video.cover,
            video=str(video.video_path) if video.video_path else None,
            raw_link=raw_link,
        )


from resolvers.registry import register
register("douyin", DouyinConfig, DouyinResolver)
