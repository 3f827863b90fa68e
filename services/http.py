# Retrying HTTP helper shared by every resolver.
#
# Usage:
#   http = HttpClient()
#   text, final_url = await http.get_text(url, guard=lambda u: normalize_url(u, DOMAINS))
#   data = await http.get_json(api_url, headers={"Referer": "https://www.bilibili.com/"})
#
# Each public call is attempted twice; the second attempt waits
# attempt × backoff (400 ms by default). Redirects are followed by hand so the
# optional *guard* sees every Location before it is requested.

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urljoin

import aiohttp

import services.logger as log
from services.error import FetchError, InputRejected

l = log.get_logger()

T = TypeVar("T")

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)

_DEFAULT_ATTEMPTS = 2
_DEFAULT_BACKOFF = 0.4
_MAX_REDIRECTS = 5
_REDIRECT_STATUSES = (301, 302, 303, 307, 308)
_DEFAULT_MAX_BYTES = 10 * 1024 * 1024

Guard = Callable[[str], "str | None"]


@dataclass
class FetchResult:
    url: str                # final URL after redirects
    status: int
    headers: dict[str, str] = field(default_factory=dict)  # lower-cased names
    body: bytes = b""
    content_type: str = ""

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


async def with_retry(
    op: Callable[[], Awaitable[T]],
    attempts: int = _DEFAULT_ATTEMPTS,
    backoff: float = _DEFAULT_BACKOFF,
    what: str = "request",
) -> T:
    """Run *op*, retrying on any exception with a linear backoff.

    ``InputRejected`` is never retried: the input will not get any safer.
    """
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await op()
        except InputRejected:
            raise
        except Exception as e:
            last_error = e
            l.debug(f"{what} attempt {attempt}/{attempts} failed: {e}")
            if attempt < attempts:
                await asyncio.sleep(attempt * backoff)
    if isinstance(last_error, Exception):
        raise last_error
    raise FetchError(f"{what} failed")


class HttpClient:

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        attempts: int = _DEFAULT_ATTEMPTS,
        backoff: float = _DEFAULT_BACKOFF,
        timeout: float = 20,
        user_agent: str = DESKTOP_USER_AGENT,
    ):
        self._session = session
        self._owns_session = session is None
        self.attempts = attempts
        self.backoff = backoff
        self.timeout = timeout
        self.user_agent = user_agent

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def retry(self, op: Callable[[], Awaitable[T]], what: str = "request") -> Awaitable[T]:
        return with_retry(op, self.attempts, self.backoff, what)

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def fetch_once(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        guard: Guard | None = None,
        max_bytes: int = _DEFAULT_MAX_BYTES,
    ) -> FetchResult:
        """One GET with manual redirect following. Raises ``FetchError`` on
        non-2xx and ``InputRejected`` when *guard* refuses a hop."""
        merged = {"User-Agent": self.user_agent, **(headers or {})}
        session = self._get_session()
        current = url

        for _ in range(_MAX_REDIRECTS + 1):
            async with session.get(
                current,
                headers=merged,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status in _REDIRECT_STATUSES:
                    location = resp.headers.get("Location")
                    if not location:
                        raise FetchError(f"redirect without location from {current}", resp.status)
                    target = urljoin(current, location)
                    if guard is not None:
                        safe = guard(target)
                        if not safe:
                            raise InputRejected(f"redirect target not allowed: {target}")
                        target = safe
                    current = target
                    continue

                if not 200 <= resp.status < 300:
                    raise FetchError(f"request failed: {resp.status}", resp.status)

                chunks: list[bytes] = []
                total = 0
                async for chunk in resp.content.iter_chunked(65536):
                    total += len(chunk)
                    if total > max_bytes:
                        raise FetchError(f"response from {current} exceeded {max_bytes} bytes")
                    chunks.append(chunk)

                return FetchResult(
                    url=current,
                    status=resp.status,
                    headers={k.lower(): v for k, v in resp.headers.items()},
                    body=b"".join(chunks),
                    content_type=resp.content_type or "",
                )

        raise FetchError(f"too many redirects from {url}")

    # ------------------------------------------------------------------
    # Retrying helpers
    # ------------------------------------------------------------------

    async def get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        guard: Guard | None = None,
        max_bytes: int = _DEFAULT_MAX_BYTES,
    ) -> FetchResult:
        return await self.retry(
            lambda: self.fetch_once(url, headers=headers, guard=guard, max_bytes=max_bytes),
            what=f"GET {url}",
        )

    async def get_text(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        guard: Guard | None = None,
        check: Callable[[str], bool] | None = None,
    ) -> tuple[str, str]:
        """Return ``(body_text, final_url)``. A falsy *check* result counts as
        a failed attempt."""

        async def attempt() -> tuple[str, str]:
            result = await self.fetch_once(url, headers=headers, guard=guard)
            text = result.text()
            if check is not None and not check(text):
                raise FetchError(f"unexpected page content from {result.url}")
            return text, result.url

        return await self.retry(attempt, what=f"GET {url}")

    async def get_json(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        guard: Guard | None = None,
    ) -> Any:
        merged = {"Accept": "application/json", **(headers or {})}

        async def attempt() -> Any:
            result = await self.fetch_once(url, headers=merged, guard=guard)
            try:
                return json.loads(result.text())
            except ValueError as e:
                raise FetchError(f"invalid JSON from {result.url}: {e}") from e

        return await self.retry(attempt, what=f"GET {url}")
