from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from hostrunner.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    Privileged sessions get exactly one attempt on the primary backend, and no
    attempt is retried once it has streamed output to the caller.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.credential_key = primary_backend.credential_key

    def credential_keys(self) -> tuple[str, ...]:
        keys = (*self.primary_backend.credential_keys(), *self.fallback_backend.credential_keys())
        return tuple(dict.fromkeys(keys))

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _stream_with_deadline(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.retry_policy.timeout_seconds
        iterator = backend.execute(system_prompt, user_prompt, context, tools).__aiter__()
        while True:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise TimeoutError
                chunk = await asyncio.wait_for(anext(iterator), timeout=remaining)
            except StopAsyncIteration:
                return
            except TimeoutError as exc:
                raise BackendTimeoutError(
                    f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                    retriable=True,
                ) from exc
            yield chunk

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        privileged = bool(context.get("privileged"))
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name and not privileged:
            attempts.append((self.fallback_name, self.fallback_backend))
        max_retries = 0 if privileged else self.retry_policy.max_retries

        errors: list[str] = []
        for backend_name, backend in attempts:
            for attempt in range(max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                streamed = False
                try:
                    async for chunk in self._stream_with_deadline(
                        backend, system_prompt, user_prompt, context, tools
                    ):
                        streamed = True
                        yield chunk
                except BackendExecutionError as exc:
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                            "streamed": streamed,
                        }
                    )
                    if streamed:
                        raise
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            backend=self.primary_name,
            retriable=False,
        )
