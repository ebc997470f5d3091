"""
Pull-based stream wrapper with a stall watchdog.
"""

import asyncio
from collections.abc import AsyncIterator

from .errors import StreamStalledError


class StallGuardedStream:
    """Wraps an async iterator of text chunks.

    ``next()`` waits at most ``stall_timeout`` seconds for the following chunk
    and raises ``StreamStalledError`` when none arrives. ``cancel()`` closes the
    underlying source; it is safe to call more than once.
    """

    def __init__(self, source: AsyncIterator[str], stall_timeout: float, *, provider: str = "upstream"):
        self._source = source
        self.stall_timeout = stall_timeout
        self.provider = provider
        self._closed = False
        self.chunks_received = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def next(self, timeout: float | None = None) -> str:
        if self._closed:
            raise StopAsyncIteration
        window = self.stall_timeout if timeout is None else timeout
        try:
            chunk = await asyncio.wait_for(self._source.__anext__(), window)
        except StopAsyncIteration:
            self._closed = True
            raise
        except TimeoutError as exc:
            self._closed = True
            raise StreamStalledError(
                f"no chunk from {self.provider} within {window:.1f}s", provider=self.provider
            ) from exc
        except Exception:
            self._closed = True
            raise
        self.chunks_received += 1
        return chunk

    async def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    def __aiter__(self) -> "StallGuardedStream":
        return self

    async def __anext__(self) -> str:
        return await self.next()
