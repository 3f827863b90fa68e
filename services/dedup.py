# Two-tier link dedup.
#
#   DedupCache             – process-wide key -> timestamp map with a TTL
#                            window; one instance per concern (parsed links,
#                            delivered message events), injected into the
#                            dispatcher.
#   check_and_add_to_seen  – per-batch set of canonical keys, thrown away
#                            after the batch.
#
# The event loop is single-threaded and check_and_mark_parsed() never awaits,
# so the check and the mark happen in one step with no lock.

import asyncio
from typing import Iterable

import services.logger as log
import services.util as u

l = log.get_logger()


class DedupCache:

    def __init__(self, window_ms: int, name: str = "links"):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.window_ms = window_ms
        self.name = name
        self._entries: dict[str, int] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.is_recently_parsed([key])

    # ------------------------------------------------------------------
    # Check / mark
    # ------------------------------------------------------------------

    def _fresh(self, key: str, window_ms: int, now: int) -> bool:
        stamp = self._entries.get(key)
        return stamp is not None and now - stamp < window_ms

    def check_and_mark_parsed(
        self,
        keys: Iterable[str],
        window_ms: int | None = None,
        now: int | None = None,
    ) -> bool:
        """Return True if any of *keys* was handled within the window.

        Otherwise mark every key as handled at *now* and return False. A hit
        marks nothing.
        """
        keys = [k for k in keys if k]
        window_ms = self.window_ms if window_ms is None else window_ms
        now = u.now_ms() if now is None else now

        if any(self._fresh(k, window_ms, now) for k in keys):
            return True
        for k in keys:
            self._entries[k] = now
        return False

    def is_recently_parsed(self, keys: Iterable[str], now: int | None = None) -> bool:
        now = u.now_ms() if now is None else now
        return any(self._fresh(k, self.window_ms, now) for k in keys if k)

    def mark_parsed(self, keys: Iterable[str], now: int | None = None) -> None:
        now = u.now_ms() if now is None else now
        for k in keys:
            if k:
                self._entries[k] = now

    def release(self, keys: Iterable[str]) -> None:
        """Forget *keys*, e.g. after their resolution failed."""
        for k in keys:
            self._entries.pop(k, None)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self, now: int | None = None) -> int:
        """Drop expired entries; returns how many were removed."""
        now = u.now_ms() if now is None else now
        expired = [k for k, stamp in self._entries.items() if now - stamp >= self.window_ms]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep (every half window) on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_forever(), name=f"dedup-sweep/{self.name}"
            )

    async def _sweep_forever(self) -> None:
        interval = self.window_ms / 2000
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                l.debug(f"Dedup [{self.name}] swept {removed} expired key(s)")

    def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()


def check_and_add_to_seen(canonical_key: str | None, seen: set[str]) -> bool:
    """Intra-batch dedup: True if *canonical_key* is already in *seen*,
    otherwise add it and return False. Empty keys never count as seen."""
    if not canonical_key:
        return False
    if canonical_key in seen:
        return True
    seen.add(canonical_key)
    return False
