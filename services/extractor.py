# Turning an incoming message into link targets.
#
#   extract_text()             – flatten text, segments and the raw vendor
#                                payload into one searchable string
#   extract_link_targets()     – ask every enabled resolver for its targets
#   deduplicate_link_targets() – order-preserving dedup by target key
#   extract_share_meta()       – title / desc / jumpUrl out of a share card
#
# Share cards (QQ mini-app / news cards) put their links inside JSON that is
# nested in the raw event, often several levels deep, so the raw payload is
# walked as a generic tree rather than parsed against a fixed shape.

import re
from typing import Any, Iterable

import services.logger as log
from services.message import LinkTarget, MessageEvent, ShareMeta
from services.miner import find_first_string_by_keys, safe_json_parse

l = log.get_logger()

LINK_HINT_RE = re.compile(
    r"(https?://|www\.|xhslink\.com|xiaohongshu\.com|b23\.tv|bilibili\.com"
    r"|douyin\.com|iesdouyin\.com|bv[0-9a-z]{8,}|av\d{6,})",
    re.IGNORECASE,
)
MAX_CANDIDATE_TEXTS = 80
MAX_RAW_DEPTH = 4
MAX_SEGMENT_DEPTH = 2

_CQ_JSON_MARKER = "[CQ:json,"
_CQ_UNESCAPES = (
    ("&#44;", ","),
    ("&#91;", "["),
    ("&#93;", "]"),
    ("&quot;", '"'),
    ("&amp;", "&"),
)
_JUMP_URL_KEYS = ("jumpUrl", "qqdocurl")


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

def collect_candidate_strings(value: Any, max_depth: int) -> list[str]:
    """Strings that look like they carry a link, from a bounded walk.

    Depth counts container levels; strings directly under a container are
    always inspected. Stops silently at MAX_CANDIDATE_TEXTS and never visits
    a container twice.
    """
    results: list[str] = []
    visited: set[int] = set()

    def push(text: str):
        if text and LINK_HINT_RE.search(text):
            results.append(text)

    def walk(node: Any, depth: int):
        if len(results) >= MAX_CANDIDATE_TEXTS or node is None:
            return
        if isinstance(node, str):
            push(node)
            return
        if not isinstance(node, (dict, list, tuple)):
            return
        if id(node) in visited:
            return
        visited.add(id(node))
        if depth <= 0:
            return

        children = node.values() if isinstance(node, dict) else node
        for child in children:
            if isinstance(child, str) and isinstance(node, dict):
                push(child)
            else:
                walk(child, depth - 1)
            if len(results) >= MAX_CANDIDATE_TEXTS:
                return

    walk(value, max_depth)
    return results


def raw_payload(raw: Any) -> Any:
    """Unwrap host envelopes: ``raw.metadata.raw``, then ``raw.raw``, then raw."""
    if isinstance(raw, dict):
        metadata = raw.get("metadata")
        if isinstance(metadata, dict) and metadata.get("raw") is not None:
            return metadata["raw"]
        if raw.get("raw") is not None:
            return raw["raw"]
    return raw


def extract_text(raw_text: str | None, segments: Iterable[dict] | None, raw_event: Any = None) -> str:
    pieces: dict[str, None] = {}

    def add(value: Any):
        if isinstance(value, str) and value.strip():
            pieces.setdefault(value.strip())

    add(raw_text)

    for segment in segments or ():
        if not isinstance(segment, dict):
            continue
        data = segment.get("data")
        if segment.get("type") == "text" and isinstance(data, dict) and isinstance(data.get("text"), str):
            add(data["text"])
            continue
        for candidate in collect_candidate_strings(data, MAX_SEGMENT_DEPTH):
            add(candidate)

    for candidate in collect_candidate_strings(raw_payload(raw_event), MAX_RAW_DEPTH):
        add(candidate)

    return " ".join(pieces)


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------

def extract_link_targets(text: str, resolvers: Iterable) -> list[LinkTarget]:
    """Targets from every resolver, in resolver order. Not deduplicated."""
    if not text:
        return []
    targets: list[LinkTarget] = []
    for resolver in resolvers:
        targets.extend(resolver.extract_targets(text))
    return targets


def deduplicate_link_targets(targets: Iterable[LinkTarget]) -> list[LinkTarget]:
    seen: set[str] = set()
    results = []
    for target in targets:
        if target.key in seen:
            continue
        seen.add(target.key)
        results.append(target)
    return results


# ---------------------------------------------------------------------------
# Share cards
# ---------------------------------------------------------------------------

def extract_cq_json(raw_message: str) -> str | None:
    """Unescaped ``data=`` payload of the first ``[CQ:json,...]`` code."""
    start = raw_message.find(_CQ_JSON_MARKER)
    if start == -1:
        return None
    data_index = raw_message.find("data=", start)
    if data_index == -1:
        return None
    payload = raw_message[data_index + 5:]
    end = payload.rfind("]")
    if end != -1:
        payload = payload[:end]
    for escaped, plain in _CQ_UNESCAPES:
        payload = payload.replace(escaped, plain)
    return payload.strip()


def extract_share_meta(event: MessageEvent) -> ShareMeta:
    payload = raw_payload(event.raw)
    candidates: list[Any] = []
    if isinstance(payload, (dict, list)):
        candidates.append(payload)

    segments = list(event.message.segments or [])
    if isinstance(payload, dict) and isinstance(payload.get("message"), list):
        segments.extend(payload["message"])
    for segment in segments:
        if not isinstance(segment, dict) or segment.get("type") not in ("json", None):
            continue
        data = segment.get("data")
        inner = data.get("data") if isinstance(data, dict) else None
        if isinstance(inner, str):
            parsed = safe_json_parse(inner)
            if parsed is not None:
                candidates.append(parsed)

    if isinstance(payload, dict) and isinstance(payload.get("raw_message"), str):
        parsed = safe_json_parse(extract_cq_json(payload["raw_message"]))
        if parsed is not None:
            candidates.append(parsed)

    title = desc = jump_url = None
    for candidate in candidates:
        title = title or find_first_string_by_keys(candidate, ("title",))
        desc = desc or find_first_string_by_keys(candidate, ("desc",))
        jump_url = jump_url or find_first_string_by_keys(candidate, _JUMP_URL_KEYS)
        if title and desc and jump_url:
            break

    meta = ShareMeta(
        title=(title or "").strip() or None,
        desc=(desc or "").strip() or None,
        jump_url=(jump_url or "").strip() or None,
    )
    if meta.jump_url:
        l.debug(f"Share card on message {event.message.id}: {meta.jump_url}")
    return meta
