from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from conductor.backends.base import AgentBackend, AgentReply, AgentRequest
from conductor.errors import InvalidResponseError, TransportError, TransportTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

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

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempt_plan(self) -> list[tuple[str, AgentBackend]]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    def _record_failure(
        self, errors: list[str], backend_name: str, attempt: int, exc: Exception, retriable: bool
    ) -> None:
        errors.append(f"{backend_name}[{attempt}]: {exc}")
        self._emit(
            {
                "event": "backend_attempt_failed",
                "backend": backend_name,
                "attempt": attempt,
                "error": str(exc),
                "retriable": retriable,
            }
        )

    async def _wait(self, backend_name: str, attempt: int) -> None:
        delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
        self._emit(
            {
                "event": "backend_retry",
                "backend": backend_name,
                "attempt": attempt,
                "delay_seconds": delay,
            }
        )
        logger.warning("Retrying backend %s (attempt %d) in %.1fs", backend_name, attempt, delay)
        await asyncio.sleep(delay)

    async def query(self, request: AgentRequest) -> AgentReply:
        timeout = self.retry_policy.timeout_seconds
        errors: list[str] = []
        for index, (backend_name, backend) in enumerate(self._attempt_plan()):
            backend_request = request
            if index > 0:
                # A session id minted by one engine means nothing to another.
                backend_request = replace(request, session_id=None, resume=False)
                self._emit({"event": "backend_failover_start", "backend": backend_name})
                logger.warning("Failing over to backend %s", backend_name)

            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    await self._wait(backend_name, attempt)
                try:
                    reply = await asyncio.wait_for(backend.query(backend_request), timeout=timeout)
                except TimeoutError:
                    error = TransportTimeoutError(
                        f"Backend request timed out after {timeout:.1f}s", backend=backend_name
                    )
                    self._record_failure(errors, backend_name, attempt, error, True)
                    continue
                except TransportError as exc:
                    self._record_failure(errors, backend_name, attempt, exc, exc.retriable)
                    if not exc.retriable:
                        break
                    continue
                except InvalidResponseError as exc:
                    self._record_failure(errors, backend_name, attempt, exc, True)
                    continue

                if index > 0:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                if reply.backend is None:
                    reply.backend = backend_name
                return reply

        raise TransportError(
            f"All backend attempts failed. {'; '.join(errors[-6:])}",
            backend=self.primary_name,
            retriable=False,
        )
