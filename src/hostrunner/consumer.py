"""Caller-facing end of a dispatch: renders events and answers confirmations."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable

import click

from hostrunner.events import (
    AWAITING_CONFIRMATION,
    Completed,
    ExecutionEvent,
    Failed,
    StatusChanged,
    TextChunk,
    event_to_dict,
)
from hostrunner.logging import get_logger
from hostrunner.stream import DispatchControl

logger = get_logger(__name__)

Renderer = Callable[[ExecutionEvent], None]
ConfirmPrompt = Callable[[], Awaitable[bool]]


class EventConsumer:
    """Reads a dispatch stream in order and returns its terminal event.

    The consumer never touches dispatcher state; its only way back is the
    ``DispatchControl`` passed in (confirm, deny, cancel).
    """

    def __init__(
        self,
        render: Renderer,
        control: DispatchControl,
        confirm: ConfirmPrompt | None = None,
    ) -> None:
        self.render = render
        self.control = control
        self.confirm = confirm
        self.violations: list[ExecutionEvent] = []

    async def consume(self, stream: AsyncIterator[ExecutionEvent]) -> Completed | Failed:
        terminal: Completed | Failed | None = None
        async for event in stream:
            if terminal is not None:
                # protocol violation: log it, never render it
                logger.error("event_after_terminal", event=repr(event), terminal=repr(terminal))
                self.violations.append(event)
                continue
            self.render(event)
            if isinstance(event, (Completed, Failed)):
                terminal = event
            elif isinstance(event, StatusChanged) and event.phase == AWAITING_CONFIRMATION:
                await self._answer_confirmation()
        if terminal is None:
            terminal = Failed(detail="Stream ended without a terminal event.", kind="InternalError")
            logger.error("stream_without_terminal")
        return terminal

    async def _answer_confirmation(self) -> None:
        if self.confirm is None:
            logger.info("confirmation_denied", reason="no prompt available")
            self.control.deny()
            return
        # cancel wins over a pending prompt
        prompt = asyncio.ensure_future(self.confirm())
        cancelled = asyncio.ensure_future(self.control.wait_cancelled())
        try:
            await asyncio.wait({prompt, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (prompt, cancelled):
                if not waiter.done():
                    waiter.cancel()

        if self.control.cancel_requested or prompt.cancelled():
            logger.info("confirmation_abandoned")
            return
        if prompt.result():
            self.control.confirm()
        else:
            self.control.deny()


class ConsoleRenderer:
    """Writes events to the terminal with click."""

    def __init__(self, *, color: bool | None = None) -> None:
        self.color = color

    def __call__(self, event: ExecutionEvent) -> None:
        if isinstance(event, TextChunk):
            click.echo(event.content, color=self.color)
        elif isinstance(event, StatusChanged):
            if event.phase == AWAITING_CONFIRMATION:
                message = "Privileged operations need sudo and the credential is not cached."
            else:
                message = f"Status: {event.phase}"
            click.secho(message, fg="yellow", err=True, color=self.color)
        elif isinstance(event, Completed):
            click.secho("Done.", fg="green", color=self.color)
        elif event.is_cancelled:
            click.secho("Cancelled.", fg="yellow", err=True, color=self.color)
        else:
            click.secho(describe_failure(event), fg="red", err=True, color=self.color)


def describe_failure(event: Failed) -> str:
    lines = [f"[{event.phase}] {event.kind}: {event.detail}"]
    if event.operation:
        lines.append(f"Failing operation (re-run manually to inspect): {event.operation}")
    return "\n".join(lines)


class JsonLinesRenderer:
    """One JSON object per event on stdout, for wrappers and log shippers."""

    def __call__(self, event: ExecutionEvent) -> None:
        click.echo(json.dumps(event_to_dict(event), ensure_ascii=False))
