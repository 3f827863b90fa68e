from dataclasses import dataclass, field
from typing import Any, Literal

TargetKind = Literal["xhs", "bili", "bili-id", "douyin"]


@dataclass(frozen=True)
class LinkTarget:
    """A link or platform id found in a message, before resolution."""
    kind: TargetKind
    url: str = ""      # normalized url for url-based kinds
    id_type: str = ""  # "bv" | "av" for bili-id
    id: str = ""

    @property
    def key(self) -> str:
        if self.kind == "bili-id":
            return f"{self.kind}:{self.id_type}:{self.id}"
        return f"{self.kind}:{self.url}"


@dataclass
class Segment:
    """One piece of an outgoing message."""
    type: str      # "text" | "image" | "video" | "forward"
    data: dict = field(default_factory=dict)


@dataclass
class ForwardMessage:
    """One node of a forwarded-message bundle."""
    user_id: str
    user_name: str
    segments: list[Segment] = field(default_factory=list)


@dataclass
class Sender:
    user_id: str
    user_name: str = ""


@dataclass
class MessageBody:
    id: str
    text: str = ""
    segments: list[dict] = field(default_factory=list)  # host segments, {"type", "data"}


@dataclass
class MessageEvent:
    """Platform-agnostic message event delivered by the host runtime."""
    instance_id: str        # host instance that received the message
    platform: str           # "qq" | "tg"
    channel_id: str
    channel_type: str       # "group" | "private" | "channel"
    sender: Sender
    message: MessageBody
    raw: Any = None         # vendor payload, opaque
    thread_id: int | None = None


@dataclass
class ShareMeta:
    """Fields pulled out of a share-card payload attached to a message."""
    title: str | None = None
    desc: str | None = None
    jump_url: str | None = None


@dataclass
class PreviewMetadata:
    """Platform-neutral view of a resolved item, consumed by the renderer."""
    title: str
    url: str
    ids: str | None = None      # e.g. "BV号：BV1xx / av170001"
    author: str | None = None
    detail: str | None = None   # e.g. duration and partition
    desc: str | None = None
    stats: str | None = None    # e.g. "数据：播放 10万 / 赞 5000"
    cover: str | None = None
    images: list[str] = field(default_factory=list)
    video: str | None = None    # local path or direct url for a video segment
    raw_link: str | None = None
