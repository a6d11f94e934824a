"""Shared async GET cache and mutation dispatcher over ``httpx``."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import httpx

from services.errors import (
    ApplicationError,
    ClientRequestError,
    DerivedMetricsError,
    TransientNetworkError,
)
from settings import get_settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass
class _PendingEntry:
    task: "asyncio.Task[Any]"
    started_at: float


@dataclass(frozen=True)
class _ResolvedEntry:
    data: Any
    resolved_at: float
    expires_at: float


_Entry = Union[_PendingEntry, _ResolvedEntry]


def _error_detail(response: httpx.Response) -> Optional[str]:
    """Best-effort reason from an error body (``detail``/``error``)."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text or None
    if not isinstance(payload, dict):
        return None
    detail = payload.get("detail", payload.get("error"))
    if isinstance(detail, dict):
        detail = detail.get("error")
    return str(detail) if detail else None


class RequestCache:
    """Deduplicates concurrent reads, serves fresh copies and retries failures.

    Entries are keyed by URL. A key is either ``pending`` (one shared in-flight
    task every caller awaits) or ``resolved`` until its TTL elapses. Writes go
    through :meth:`mutate` and drop every entry matching the given patterns.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        ttl: float = 10.0,
        retries: int = 2,
        retry_delay: float = 1.5,
        stale_pending_after: float = 300.0,
        sweep_interval: float = 60.0,
        timeout: float = 30.0,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.ttl = ttl
        self.retries = retries
        self.retry_delay = retry_delay
        self.stale_pending_after = stale_pending_after
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[str, _Entry] = {}
        self._sweeper: Optional["asyncio.Task[None]"] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def state_of(self, url: str) -> Optional[str]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        return "pending" if isinstance(entry, _PendingEntry) else "resolved"

    async def query(
        self,
        url: str,
        ttl: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> Any:
        entry = self._entries.get(url)
        if isinstance(entry, _PendingEntry):
            logger.debug("Joining in-flight request", extra={"url": url})
            return await asyncio.shield(entry.task)
        if isinstance(entry, _ResolvedEntry):
            if self._clock() < entry.expires_at:
                return entry.data
            del self._entries[url]

        # No await between the lookup above and this registration.
        task = asyncio.ensure_future(
            self._load(
                url,
                self.ttl if ttl is None else ttl,
                self.retries if retries is None else retries,
            )
        )
        self._entries[url] = _PendingEntry(task=task, started_at=self._clock())
        return await asyncio.shield(task)

    async def mutate(
        self,
        url: str,
        method: str = "PUT",
        json: Any = None,
        invalidate: Iterable[str] = (),
        retries: int = 0,
    ) -> Any:
        try:
            payload = await self._request(method, url, json, retries)
        except DerivedMetricsError as exc:
            logger.error(
                "Mutation failed",
                extra={"url": url, "method": method, "reason": str(exc)},
            )
            raise
        patterns = [invalidate] if isinstance(invalidate, str) else list(invalidate)
        if patterns:
            self.invalidate(patterns)
        return payload

    def invalidate(self, patterns: Union[str, Iterable[str]]) -> int:
        """Drop every entry (pending included) whose key contains a pattern."""
        if isinstance(patterns, str):
            patterns = [patterns]
        patterns = [pattern for pattern in patterns if pattern]
        matching = [key for key in self._entries if any(pattern in key for pattern in patterns)]
        for key in matching:
            del self._entries[key]
        if matching:
            logger.info(
                "Invalidated cached requests",
                extra={"pattern": patterns, "removed": len(matching)},
            )
        return len(matching)

    def clean_cache(self) -> int:
        """Remove expired resolved entries and pending ones that never settled."""
        now = self._clock()
        stale = []
        for key, entry in self._entries.items():
            if isinstance(entry, _ResolvedEntry):
                if now >= entry.expires_at:
                    stale.append(key)
            elif now - entry.started_at > self.stale_pending_after:
                stale.append(key)
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Swept cache", extra={"removed": len(stale)})
        return len(stale)

    def start_sweeper(self, interval: Optional[float] = None) -> "asyncio.Task[None]":
        if self._sweeper is None or self._sweeper.done():
            period = self.sweep_interval if interval is None else interval
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(period))
        return self._sweeper

    async def aclose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        pending = [entry.task for entry in self._entries.values() if isinstance(entry, _PendingEntry)]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._entries.clear()
        if self._owns_client:
            await self._client.aclose()

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.clean_cache()

    async def _load(self, url: str, ttl: float, retries: int) -> Any:
        try:
            payload = await self._request("GET", url, None, retries)
        except BaseException:
            self._release(url)
            raise
        current = self._entries.get(url)
        if isinstance(current, _PendingEntry) and current.task is asyncio.current_task():
            now = self._clock()
            self._entries[url] = _ResolvedEntry(data=payload, resolved_at=now, expires_at=now + ttl)
        return payload

    def _release(self, url: str) -> None:
        current = self._entries.get(url)
        if isinstance(current, _PendingEntry) and current.task is asyncio.current_task():
            del self._entries[url]

    async def _request(self, method: str, url: str, json_body: Any, retries: int) -> Any:
        attempt = 0
        while True:
            try:
                return await self._send(method, url, json_body)
            except TransientNetworkError as exc:
                if attempt >= retries:
                    logger.error(
                        "Request failed after retries",
                        extra={"url": url, "method": method, "attempt": attempt, "reason": str(exc)},
                    )
                    raise
                delay = self.retry_delay * 2**attempt
                attempt += 1
                logger.warning(
                    "Request failed; retrying",
                    extra={
                        "url": url,
                        "method": method,
                        "attempt": attempt,
                        "status_code": exc.status_code,
                        "reason": str(exc),
                    },
                )
                await self._sleep(delay)

    async def _send(self, method: str, url: str, json_body: Any) -> Any:
        try:
            response = await self._client.request(method, url, json=json_body)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{method} {url} failed: {exc}") from exc

        status_code = response.status_code
        if 400 <= status_code < 500:
            detail = _error_detail(response)
            message = f"{method} {url} was rejected with status {status_code}"
            raise ClientRequestError(
                f"{message}: {detail}" if detail else f"{message}.", status_code=status_code
            )
        if status_code >= 500:
            raise TransientNetworkError(
                f"{method} {url} failed with status {status_code}.", status_code=status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientNetworkError(
                f"{method} {url} returned an undecodable body.", status_code=status_code
            ) from exc

        if isinstance(payload, dict) and payload.get("success") is False:
            message = payload.get("error") or payload.get("message") or "Request reported failure."
            raise ApplicationError(str(message))
        return payload


@lru_cache
def build_default_cache() -> RequestCache:
    settings = get_settings()
    return RequestCache(
        ttl=settings.cache_ttl_seconds,
        retries=settings.query_retries,
        retry_delay=settings.retry_delay_seconds,
        stale_pending_after=settings.stale_pending_seconds,
        sweep_interval=settings.sweep_interval_seconds,
        timeout=settings.query_timeout_seconds,
    )
