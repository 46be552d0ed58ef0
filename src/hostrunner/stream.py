"""Ordered event delivery for one dispatch, plus the consumer's control channel.

The event stream only flows dispatcher -> consumer. Confirmation and
cancellation travel the other way through ``DispatchControl``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from hostrunner.events import ExecutionEvent, Failed
from hostrunner.logging import get_logger

logger = get_logger(__name__)


class DispatchControl:
    def __init__(self) -> None:
        self._decided = asyncio.Event()
        self._cancelled = asyncio.Event()
        self._approved: bool | None = None

    def confirm(self) -> None:
        self._decide(True)

    def deny(self) -> None:
        self._decide(False)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled.is_set()

    @property
    def decision(self) -> bool | None:
        return self._approved

    def _decide(self, approved: bool) -> None:
        if self._decided.is_set():
            return
        self._approved = approved
        self._decided.set()

    async def wait_for_decision(self) -> bool:
        """Block until the consumer confirms or denies. No timeout: cancel instead."""
        await self._decided.wait()
        return bool(self._approved)

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()


class EventChannel:
    """Write side of a dispatch stream; refuses anything after the terminal event."""

    def __init__(self, queue: asyncio.Queue[ExecutionEvent]) -> None:
        self._queue = queue
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: ExecutionEvent) -> None:
        if self._closed:
            raise RuntimeError(f"Event emitted after terminal event: {event!r}")
        if event.terminal:
            self._closed = True
        self._queue.put_nowait(event)


Producer = Callable[[EventChannel], Awaitable[None]]


class DispatchStream:
    """Async iterator over the events of one dispatch.

    The producer starts on first iteration. Cancellation requested through
    ``control`` stops the producer and ends the stream with
    ``Failed("cancelled")`` as the next event, even if the producer had
    already queued more.
    """

    def __init__(self, producer: Producer, control: DispatchControl) -> None:
        self.control = control
        self._producer = producer
        self._queue: asyncio.Queue[ExecutionEvent] = asyncio.Queue()
        self._channel = EventChannel(self._queue)
        self._task: asyncio.Task[None] | None = None
        self._finished = False

    def __aiter__(self) -> DispatchStream:
        return self

    async def __anext__(self) -> ExecutionEvent:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._drive())
        if self.control.cancel_requested:
            return await self._finish_cancelled()

        getter = asyncio.ensure_future(self._queue.get())
        canceller = asyncio.ensure_future(self.control.wait_cancelled())
        try:
            await asyncio.wait({getter, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, canceller):
                if not waiter.done():
                    waiter.cancel()

        if canceller.done() and not canceller.cancelled():
            return await self._finish_cancelled()

        event = getter.result()
        if event.terminal:
            self._finished = True
            await self._join()
        return event

    async def aclose(self) -> None:
        """Abandon the stream without emitting anything further."""
        self._finished = True
        await self._stop_producer()

    async def _finish_cancelled(self) -> ExecutionEvent:
        self._finished = True
        await self._stop_producer()
        logger.info("dispatch_cancelled")
        return Failed.cancelled()

    async def _stop_producer(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def _join(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _drive(self) -> None:
        try:
            await self._producer(self._channel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("dispatch_internal_error")
            if not self._channel.closed:
                self._channel.emit(Failed(detail=str(exc), kind="InternalError"))
            return
        if not self._channel.closed:
            self._channel.emit(
                Failed(detail="Handler finished without a terminal event.", kind="InternalError")
            )
