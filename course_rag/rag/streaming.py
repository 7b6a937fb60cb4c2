"""Cancellable token channel for streamed answers."""
import asyncio
import weakref
from typing import AsyncGenerator, Callable, List, Optional

import structlog

logger = structlog.get_logger()


class TokenStream:
    """A finite, non-restartable async sequence of answer tokens.

    ``cancel()`` closes the channel: a consumer waiting for the next token is
    woken immediately, the producing generator is closed (which aborts the
    upstream request) and tokens still in flight are dropped.

    ``on_close`` runs exactly once, when the stream ends, is cancelled, or is
    garbage collected without ever being closed.

    Usage::

        stream = await engine.answer_stream(question)
        async with stream:
            async for token in stream:
                print(token, end="")
    """

    def __init__(
        self,
        tokens: AsyncGenerator[str, None],
        sources: List[str],
        on_close: Optional[Callable[[], None]] = None,
    ):
        self._tokens = tokens
        self.sources = list(sources)
        self._finalizer = weakref.finalize(self, on_close) if on_close is not None else None
        self._parts: List[str] = []
        self._cancelled = False
        self._closed = False
        self._pending: Optional["asyncio.Task[str]"] = None

    @property
    def grounded(self) -> bool:
        return bool(self.sources)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def text(self) -> str:
        """Everything forwarded to the consumer so far."""
        return "".join(self._parts)

    def __aiter__(self) -> "TokenStream":
        return self

    async def _next_token(self) -> str:
        return await self._tokens.__anext__()

    async def __anext__(self) -> str:
        if self._closed or self._cancelled:
            raise StopAsyncIteration

        self._pending = asyncio.create_task(self._next_token())
        try:
            token = await self._pending
        except BaseException:
            # cancel() owns the shutdown once it has been called
            if self._cancelled:
                raise StopAsyncIteration
            await self._close()
            raise
        finally:
            self._pending = None

        if self._cancelled:
            raise StopAsyncIteration

        self._parts.append(token)
        return token

    async def cancel(self) -> None:
        """Stop the stream; safe to call more than once."""
        if self._closed or self._cancelled:
            return
        self._cancelled = True
        logger.info("answer_stream_cancelled", forwarded_chars=len(self.text))

        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait([pending])
        await self._close()

    async def collect(self) -> str:
        """Drain the stream and return the full text."""
        async for _ in self:
            pass
        return self.text

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._tokens.aclose()
        finally:
            if self._finalizer is not None:
                self._finalizer()

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            await self.cancel()
