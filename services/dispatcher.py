# Link-analysis plugin: the message handler tying extraction, dedup,
# resolution and rendering together.
#
# Per message event:
#   1. drop duplicate deliveries of the same event (short window)
#   2. drop the bot's own echoed messages
#   3. extract text and targets, dedup, cap at max_targets
#   4. per target: cross-message dedup (mark before fetching), resolve,
#      intra-batch dedup on the canonical key, render
#   5. send everything as one forward bundle
#
# The two DedupCache instances are passed in, so tests and embedders decide
# their lifetime; install() starts their sweeps and the unload hook stops them.

import re
from typing import Any, Iterable

import services.logger as log
from services.config_schema import PluginConfig
from services.dedup import DedupCache, check_and_add_to_seen
from services.extractor import (
    deduplicate_link_targets,
    extract_link_targets,
    extract_share_meta,
    extract_text,
    raw_payload,
)
from services.message import ForwardMessage, MessageEvent, Segment, ShareMeta

_DIGITS_RE = re.compile(r"\d+")
_SUMMARY_LIMIT = 4


def resolve_platform(event: MessageEvent) -> str:
    return "tg" if event.platform in ("tg", "telegram") else "qq"


def resolve_channel_id(event: MessageEvent) -> str:
    """``qq:group:<id>`` / ``qq:private:<id>`` for QQ, ``tg:<id>`` for Telegram."""
    if resolve_platform(event) == "qq":
        channel_type = "private" if event.channel_type == "private" else "group"
        return f"qq:{channel_type}:{event.channel_id}"
    return f"tg:{event.channel_id}"


def should_skip_self_message(event: MessageEvent) -> bool:
    """True for QQ messages whose sender is the bot account itself."""
    if resolve_platform(event) != "qq":
        return False
    payload = raw_payload(event.raw)
    self_id = payload.get("self_id") if isinstance(payload, dict) else None
    if not self_id:
        return False
    sender_digits = "".join(_DIGITS_RE.findall(event.sender.user_id or ""))
    return sender_digits != "" and sender_digits == str(self_id)


def _summarize_string(value: Any, max_length: int = 120) -> Any:
    if not isinstance(value, str) or len(value) <= max_length:
        return value
    return f"{value[:max_length - 3]}..."


def summarize_segment(segment: Segment) -> dict:
    data = segment.data or {}
    if segment.type == "text":
        return {"type": "text", "text": _summarize_string(data.get("text"), 200)}
    if segment.type in ("image", "video", "audio", "file"):
        file = data.get("file")
        return {
            "type": segment.type,
            "url": _summarize_string(data.get("url"), 160),
            "file_kind": type(file).__name__ if file is not None else None,
            "file_size": len(file) if isinstance(file, (bytes, bytearray)) else None,
            "file": _summarize_string(file, 160) if isinstance(file, str) else None,
        }
    if segment.type == "forward":
        messages = data.get("messages")
        return {"type": "forward", "count": len(messages) if isinstance(messages, list) else 0}
    return {"type": segment.type}


def summarize_forward_messages(messages: Iterable[ForwardMessage]) -> list[dict]:
    """Log-friendly view of a forward bundle; long strings are cut."""
    return [
        {
            "user_id": m.user_id,
            "user_name": m.user_name,
            "segments": [summarize_segment(s) for s in m.segments],
        }
        for m in messages
    ]


class LinkAnalysisPlugin:
    """Parses Xiaohongshu, Bilibili and Douyin links and replies with a preview."""

    id = "link-analysis"
    name = "Link Analysis (XHS/Bilibili/Douyin)"

    def __init__(
        self,
        resolvers: Iterable,
        config: PluginConfig | None = None,
        *,
        link_cache: DedupCache | None = None,
        message_cache: DedupCache | None = None,
    ):
        self.config = config or PluginConfig()
        self.resolvers = list(resolvers)
        self._by_kind = {kind: r for r in self.resolvers for kind in r.kinds}
        self.link_cache = link_cache or DedupCache(self.config.cache_window_seconds * 1000, name="links")
        self.message_cache = message_cache or DedupCache(
            self.config.message_window_seconds * 1000, name="messages"
        )
        self.ctx = None
        self.logger = log.get_logger()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def install(self, ctx) -> None:
        self.ctx = ctx
        self.logger = ctx.logger
        ctx.on("message", self.on_message)
        ctx.on_unload(self.uninstall)
        self.link_cache.start()
        self.message_cache.start()
        names = ", ".join(r.name for r in self.resolvers) or "none"
        self.logger.info(f"Link analysis plugin installed (resolvers: {names})")

    async def uninstall(self) -> None:
        self.link_cache.close()
        self.message_cache.close()
        self.logger.info("Link analysis plugin unloaded")

    # ------------------------------------------------------------------
    # Handler
    # ------------------------------------------------------------------

    def is_duplicate_event(self, event: MessageEvent) -> bool:
        if not event.message.id:
            return False
        key = f"{event.instance_id}:{event.message.id}"
        if self.message_cache.check_and_mark_parsed([key]):
            self.logger.debug(f"Skipping duplicate message event: {event.message.id}")
            return True
        return False

    async def on_message(self, event: MessageEvent) -> None:
        if self.is_duplicate_event(event):
            return
        if self.config.skip_self_messages and should_skip_self_message(event):
            return

        share = extract_share_meta(event)
        text = extract_text(event.message.text, event.message.segments, event.raw)
        if not text:
            return

        targets = extract_link_targets(text, self.resolvers)
        if not targets:
            return
        targets = deduplicate_link_targets(targets)[: self.config.max_targets]

        messages = await self.collect_previews(targets, event.sender.user_id, share)
        if not messages:
            return
        await self.send_forward_preview(event, messages)

    async def collect_previews(
        self,
        targets: list,
        sender_id: str,
        share: ShareMeta | None = None,
    ) -> list[ForwardMessage]:
        """Resolve *targets* one after another and render the survivors."""
        messages: list[ForwardMessage] = []
        seen: set[str] = set()

        for target in targets:
            resolver = self._by_kind.get(target.kind)
            if resolver is None:
                continue

            keys = resolver.cache_keys(target)
            if self.link_cache.check_and_mark_parsed(keys):
                self.logger.debug(f"Skipping recently parsed link: {keys[0]}")
                continue

            matched = share if resolver.matches_share(target, share) else None
            try:
                media = await resolver.resolve(target, matched)
            except Exception as e:
                self.link_cache.release(keys)
                self.logger.warning(f"{resolver.source_name} failed for {target.key}: {log.format_error(e)}")
                continue
            if media is None:
                self.link_cache.release(keys)
                self.logger.info(f"{resolver.source_name}: nothing found for {target.key}")
                continue

            self.link_cache.mark_parsed(resolver.alias_keys(media))
            if check_and_add_to_seen(resolver.canonical_key(media), seen):
                self.logger.debug(f"Skipping duplicate item in batch: {resolver.canonical_key(media)}")
                continue

            if matched is not None:
                resolver.apply_share_meta(media, matched, self.config.share_card_policy)
            try:
                await resolver.prepare_media(media)
            except Exception as e:
                self.logger.warning(f"{resolver.source_name} media step failed: {log.format_error(e)}")

            try:
                messages.extend(resolver.build_forward_messages(media, sender_id))
            except Exception as e:
                self.logger.warning(f"{resolver.source_name} render failed for {target.key}: {log.format_error(e)}")

        return messages

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send_forward_preview(self, event: MessageEvent, messages: list[ForwardMessage]) -> None:
        if not messages:
            return
        platform = resolve_platform(event)
        channel_id = resolve_channel_id(event)
        self.logger.info(
            f"LinkAnalysis forward preview [{platform}] {channel_id}: {len(messages)} node(s) "
            f"{summarize_forward_messages(messages[:_SUMMARY_LIMIT])}"
        )
        await self.ctx.message.send(
            instance_id=event.instance_id,
            channel_id=channel_id,
            thread_id=event.thread_id,
            content=[Segment("forward", {"messages": messages})],
        )
