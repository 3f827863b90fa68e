# QQ host via NapCat (OneBot 11 WebSocket protocol).
# NapCat acts as a WebSocket server; this driver connects as a client,
# receives push events, and sends actions over the same connection.
#
# Config keys (under napcat):
#   instance_id   – name this host instance reports to plugins (default "napcat")
#   ws_url        – WebSocket URL, e.g. "ws://127.0.0.1:3001"
#   ws_token      – Optional access token
#   image_mode    – "url" passes image URLs through; "base64" downloads them
#                   here and inlines the bytes (for NapCat hosts that cannot
#                   reach the CDNs)
#   max_file_size – Max bytes to download per inlined image (default 10 MB)

import asyncio
import base64
import json
import uuid
from pathlib import Path

import websockets
import websockets.exceptions

import services.logger as log
import services.media as media
from services.config_schema import NapCatConfig
from services.message import ForwardMessage, MessageBody, MessageEvent, Segment, Sender
from drivers import BaseDriver

l = log.get_logger()


def parse_channel_id(channel_id: str) -> tuple[str, str] | None:
    """``qq:group:123`` -> ``("group", "123")``; ``None`` for other platforms."""
    parts = channel_id.split(":")
    if len(parts) != 3 or parts[0] != "qq" or parts[1] not in ("group", "private") or not parts[2]:
        return None
    return parts[1], parts[2]


def plain_text(event: dict) -> str:
    """Text and share-card URLs of a OneBot message; ``raw_message`` if none."""
    segments = event.get("message", [])
    if isinstance(segments, str):
        return segments

    text_parts: list[str] = []
    for seg in segments:
        if not isinstance(seg, dict):
            continue
        t = seg.get("type", "")
        d = seg.get("data") or {}
        if t == "text":
            text_parts.append(d.get("text", ""))
        elif t == "share":
            url = (d.get("url") or "").strip()
            if url:
                text_parts.append(f" {url} ")
    text = "".join(text_parts)
    return text or event.get("raw_message", "")


def to_message_event(instance_id: str, event: dict) -> MessageEvent | None:
    """Map a OneBot 11 group/private message event; ``None`` for anything else."""
    message_type = event.get("message_type")
    if message_type == "group":
        channel_id = str(event.get("group_id", ""))
    elif message_type == "private":
        channel_id = str(event.get("user_id", ""))
    else:
        return None

    user_id = str(event.get("user_id", ""))
    sender = event.get("sender") or {}
    # Prefer group card (nickname-in-group) over global nickname
    nickname = sender.get("card") or sender.get("nickname") or user_id
    segments = event.get("message")

    return MessageEvent(
        instance_id=instance_id,
        platform="qq",
        channel_id=channel_id,
        channel_type=message_type,
        sender=Sender(user_id=user_id, user_name=nickname),
        message=MessageBody(
            id=str(event.get("message_id", "")),
            text=plain_text(event),
            segments=segments if isinstance(segments, list) else [],
        ),
        raw=event,
    )


class NapCatDriver(BaseDriver[NapCatConfig]):

    def __init__(self, instance_id: str, config: NapCatConfig):
        super().__init__(instance_id, config)
        self._ws = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        ws_url = self.config.ws_url
        token = self.config.ws_token
        if token:
            sep = "&" if "?" in ws_url else "?"
            ws_url = f"{ws_url}{sep}access_token={token}"

        l.info(f"NapCat [{self.instance_id}] connecting to {ws_url}")

        while True:
            try:
                async with websockets.connect(ws_url) as ws:
                    self._ws = ws
                    l.info(f"NapCat [{self.instance_id}] connected")
                    await self._listen(ws)
            except websockets.exceptions.ConnectionClosedOK:
                l.info(f"NapCat [{self.instance_id}] connection closed normally")
            except Exception as e:
                l.error(f"NapCat [{self.instance_id}] connection error: {e}")
            finally:
                self._ws = None

            l.info(f"NapCat [{self.instance_id}] reconnecting in 5 s…")
            await asyncio.sleep(5)

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    async def _listen(self, ws):
        async for raw in ws:
            try:
                data = json.loads(raw)
                await self._handle(data)
            except json.JSONDecodeError:
                l.warning(f"NapCat [{self.instance_id}] invalid JSON received")
            except Exception as e:
                l.error(f"NapCat [{self.instance_id}] handler error: {e}")

    async def _handle(self, data: dict):
        # Action responses carry an "echo" field and no post_type
        if data.get("post_type") is None:
            if data.get("status") == "failed":
                l.error(f"NapCat [{self.instance_id}] action {data.get('echo')} failed: {data.get('message') or data.get('wording')}")
            return

        if data.get("post_type") != "message":
            return

        event = to_message_event(self.instance_id, data)
        if event is not None:
            await self.emit("message", event)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def _image_segment(self, url: str) -> dict:
        if self.config.image_mode != "base64":
            return {"type": "image", "data": {"file": url}}
        # Download here so NapCat doesn't need to reach the platform CDNs
        result = await media.fetch(url, self.config.max_file_size)
        if result:
            data_bytes, _ = result
            b64 = base64.b64encode(data_bytes).decode()
            return {"type": "image", "data": {"file": f"base64://{b64}"}}
        return {"type": "text", "data": {"text": f"[图片] {url}"}}

    async def convert_segment(self, segment: Segment) -> dict | None:
        d = segment.data or {}
        if segment.type == "text":
            return {"type": "text", "data": {"text": d.get("text", "")}}
        if segment.type == "image":
            url = d.get("url") or d.get("file")
            return await self._image_segment(url) if url else None
        if segment.type == "video":
            file = d.get("file") or d.get("url")
            if not file:
                return None
            if not str(file).startswith(("http://", "https://", "file://", "base64://")):
                file = Path(file).resolve().as_uri()
            return {"type": "video", "data": {"file": file}}
        l.debug(f"NapCat [{self.instance_id}] unsupported segment type {segment.type!r} dropped")
        return None

    async def build_nodes(self, messages: list[ForwardMessage]) -> list[dict]:
        nodes = []
        for message in messages:
            content = [c for c in [await self.convert_segment(s) for s in message.segments] if c]
            if not content:
                continue
            nodes.append({
                "type": "node",
                "data": {
                    "user_id": message.user_id,
                    "nickname": message.user_name,
                    "content": content,
                },
            })
        return nodes

    async def send(self, channel_id: str, content: list[Segment], **kwargs):
        target = parse_channel_id(channel_id)
        if target is None:
            l.warning(f"NapCat [{self.instance_id}] send: unsupported channel {channel_id!r}")
            return
        channel_type, target_id = target
        id_key = "group_id" if channel_type == "group" else "user_id"

        if self._ws is None:
            l.warning(f"NapCat [{self.instance_id}] send: not connected, message dropped")
            return

        payloads = []
        plain: list[dict] = []
        for segment in content:
            if segment.type == "forward":
                nodes = await self.build_nodes(segment.data.get("messages", []))
                if nodes:
                    payloads.append({
                        "action": f"send_{channel_type}_forward_msg",
                        "params": {id_key: int(target_id), "messages": nodes},
                    })
            else:
                converted = await self.convert_segment(segment)
                if converted:
                    plain.append(converted)
        if plain:
            payloads.append({
                "action": f"send_{channel_type}_msg",
                "params": {id_key: int(target_id), "message": plain},
            })

        for payload in payloads:
            payload["echo"] = str(uuid.uuid4())
            try:
                await self._ws.send(json.dumps(payload, ensure_ascii=False))
            except Exception as e:
                l.error(f"NapCat [{self.instance_id}] {payload['action']} failed: {e}")

