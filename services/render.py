from services.message import ForwardMessage, PreviewMetadata, Segment

MAX_IMAGES = 6


def _node(sender_id: str, source_name: str, segment: Segment) -> ForwardMessage:
    return ForwardMessage(user_id=sender_id, user_name=source_name, segments=[segment])


def format_preview_text(meta: PreviewMetadata) -> str:
    """Labeled text block; absent fields leave no line behind."""
    lines = [f"标题：{meta.title.strip() or '未能获取标题'}"]
    if meta.ids:
        lines.append(meta.ids)
    if meta.author:
        lines.append(meta.author)
    if meta.detail:
        lines.append(meta.detail)
    if meta.desc:
        lines.append(meta.desc)
    if meta.stats:
        lines.append(meta.stats)
    if meta.url:
        lines.append(f"链接：{meta.url}")
    return "\n".join(lines)


def build_preview_messages(meta: PreviewMetadata, sender_id: str, source_name: str) -> list[ForwardMessage]:
    """Cover, text block, extra images, video, raw link; in that order."""
    messages: list[ForwardMessage] = []

    cover = meta.cover or (meta.images[0] if meta.images else None)
    if cover:
        messages.append(_node(sender_id, source_name, Segment("image", {"url": cover})))

    messages.append(_node(sender_id, source_name, Segment("text", {"text": format_preview_text(meta)})))

    extra = [img for img in meta.images if img != cover][:MAX_IMAGES - 1]
    for image in extra:
        messages.append(_node(sender_id, source_name, Segment("image", {"url": image})))

    if meta.video:
        messages.append(_node(sender_id, source_name, Segment("video", {"file": meta.video})))

    if meta.raw_link:
        messages.append(_node(sender_id, source_name, Segment("text", {"text": f"视频直链：{meta.raw_link}"})))

    return messages
