import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import BaseModel

import services.logger as log
from services.message import Segment

T = TypeVar("T", bound=BaseModel)

Handler = Callable[[Any], Awaitable[None] | None]


class MessageAPI:
    """``ctx.message``: the send surface plugins see."""

    def __init__(self, driver: "BaseDriver"):
        self._driver = driver

    async def send(
        self,
        *,
        instance_id: str,
        channel_id: str,
        content: list[Segment],
        thread_id: int | None = None,
    ):
        return await self._driver.send(channel_id, content, thread_id=thread_id, instance_id=instance_id)


class BaseDriver(ABC, Generic[T]):
    """Abstract base class for host drivers.

    A driver is also the context handed to plugins: it dispatches events to
    handlers registered with ``on()``, exposes ``message.send`` and runs the
    ``on_unload`` hooks when it shuts down.
    """

    def __init__(self, instance_id: str, config: T):
        self.instance_id = instance_id
        self.config: T = config
        self.logger = log.get_logger()
        self.message = MessageAPI(self)
        self._handlers: dict[str, list[Handler]] = {}
        self._unload_hooks: list[Callable[[], Any]] = []

    # ------------------------------------------------------------------
    # Plugin context
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def on_unload(self, hook: Callable[[], Any]) -> None:
        self._unload_hooks.append(hook)

    async def emit(self, event: str, payload: Any) -> None:
        """Run every handler for *event*; one failing handler does not stop the rest."""
        for handler in self._handlers.get(event, []):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"[{self.instance_id}] {event} handler error: {log.format_error(e)}")

    async def unload(self) -> None:
        hooks, self._unload_hooks = self._unload_hooks, []
        for hook in hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"[{self.instance_id}] unload hook error: {log.format_error(e)}")

    # ------------------------------------------------------------------
    # Platform
    # ------------------------------------------------------------------

    @abstractmethod
    async def start(self):
        """Start the driver (connect, authenticate, begin listening).
        Long-running drivers should loop indefinitely here."""

    @abstractmethod
    async def send(self, channel_id: str, content: list[Segment], **kwargs):
        """Send *content* to the channel identified by *channel_id*."""
