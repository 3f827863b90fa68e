from abc import ABC, abstractmethod
import re
from pathlib import Path
from typing import ClassVar, Generic, TypeVar

from pydantic import BaseModel

from services.http import HttpClient
from services.message import ForwardMessage, LinkTarget, PreviewMetadata, ShareMeta
from services.render import build_preview_messages
from services.url_guard import canonicalize_for_dedup, extract_candidate_urls, normalize_url

T = TypeVar("T", bound=BaseModel)

PLACEHOLDER_TITLE = "未能获取标题"


class BaseResolver(ABC, Generic[T]):
    """Abstract base class for all content-platform resolvers.

    A resolver owns everything platform-specific: which links and ids it
    recognizes, how it turns them into a media record, which cache keys
    identify that record, and how the record is rendered.
    """

    name: ClassVar[str]
    kinds: ClassVar[tuple[str, ...]]
    source_name: ClassVar[str]
    domains: ClassVar[tuple[str, ...]]
    # Scheme-less link forms, e.g. "xhslink.com/a/xyz"
    bare_link_patterns: ClassVar[tuple[re.Pattern, ...]] = ()

    def __init__(self, config: T, http: HttpClient, media_dirs: list[Path] | None = None):
        self.config: T = config
        self.http = http
        self.media_dirs = media_dirs

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def normalize(self, url: str | None) -> str | None:
        return normalize_url(url, self.domains)

    def extract_urls(self, text: str) -> list[str]:
        results = []
        for candidate in extract_candidate_urls(text, self.bare_link_patterns):
            normalized = self.normalize(candidate)
            if normalized:
                results.append(normalized)
        return results

    def extract_ids(self, text: str) -> list[LinkTarget]:
        return []

    def extract_targets(self, text: str) -> list[LinkTarget]:
        targets = [LinkTarget(kind=self.kinds[0], url=url) for url in self.extract_urls(text)]
        targets.extend(self.extract_ids(text))
        return targets

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, target: LinkTarget, share: ShareMeta | None = None):
        if target.url:
            url = target.url
            if share is not None and share.jump_url:
                url = self.normalize(share.jump_url) or url
            return await self.resolve_from_url(url)
        return await self.resolve_from_id(target.id_type, target.id)

    @abstractmethod
    async def resolve_from_url(self, url: str):
        """Resolve a normalized URL. Raises on rejected input or transport
        failure; returns ``None`` when the platform reports not-found."""

    async def resolve_from_id(self, id_type: str, id: str):
        return None

    async def prepare_media(self, media) -> None:
        """Best-effort work that only pays off once a record is known to be
        sent, e.g. downloading a video."""

    # ------------------------------------------------------------------
    # Dedup keys
    # ------------------------------------------------------------------

    def identity(self, url: str | None) -> str | None:
        """Platform id embedded in *url* (note id, BV id…), if any."""
        return None

    def cache_keys(self, target: LinkTarget) -> list[str]:
        keys = [target.key]
        ident = self.identity(target.url) if target.url else None
        if ident:
            keys.insert(0, f"{self.name}:{ident}")
        return keys

    def alias_keys(self, media) -> list[str]:
        keys = []
        ident = self.identity(media.url)
        if ident:
            keys.append(f"{self.name}:{ident}")
        if media.url:
            keys.append(f"{self.kinds[0]}:{media.url}")
        return keys

    def canonical_key(self, media) -> str:
        ident = self.identity(media.url)
        return f"{self.name}:{ident}" if ident else canonicalize_for_dedup(media.url)

    # ------------------------------------------------------------------
    # Share cards
    # ------------------------------------------------------------------

    def matches_share(self, target: LinkTarget, share: ShareMeta | None) -> bool:
        if share is None or not share.jump_url or not target.url:
            return False
        jump = self.normalize(share.jump_url)
        if not jump:
            return False
        ident = self.identity(target.url)
        return bool(ident) and ident == self.identity(jump)

    def apply_share_meta(self, media, share: ShareMeta, policy: str) -> None:
        """Merge share-card fields into *media* according to *policy*:
        ``live`` keeps fetched data, ``fallback`` fills gaps and replaces
        placeholder titles, ``share`` prefers the card."""
        jump = self.normalize(share.jump_url)
        if jump:
            media.source_url = jump
        if policy == "live":
            return
        if policy == "share":
            media.title = share.title or media.title
            media.desc = share.desc or media.desc
            return
        if share.title and (not media.title.strip() or media.title == PLACEHOLDER_TITLE):
            media.title = share.title
        if share.desc and not (media.desc or "").strip():
            media.desc = share.desc

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    @abstractmethod
    def to_preview(self, media) -> PreviewMetadata:
        """Map a media record onto the renderer's labeled fields."""

    def build_forward_messages(self, media, sender_id: str) -> list[ForwardMessage]:
        return build_preview_messages(self.to_preview(media), sender_id, self.source_name)
