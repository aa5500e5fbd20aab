"""
Broadcast plumbing: the collaborator protocol, retrying publishes, and the
token batcher used while draining a model stream.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

EVENT_TOKEN_BATCH = "token-batch"
EVENT_TOOL_CALLS_ANNOUNCED = "tool-calls-announced"
EVENT_TOOL_RESULT = "tool-result"
EVENT_REASONING_DELTA = "reasoning-delta"
EVENT_ROUND_COMPLETE = "round-complete"


@runtime_checkable
class Broadcaster(Protocol):
    """Append-only UI channel."""

    async def send(self, event: str, payload: dict) -> None: ...


class NullBroadcaster:
    """Discards every event."""

    async def send(self, event: str, payload: dict) -> None:
        return None


async def publish_with_retry(
    broadcaster: Broadcaster,
    event: str,
    payload: dict,
    *,
    max_retries: int = 3,
    base_delay: float = 0.1,
) -> bool:
    """
    Send one event, retrying with exponential backoff.

    Returns ``False`` once *max_retries* retries have failed.  Never raises
    for broadcaster errors.
    """
    for attempt in range(1 + max_retries):
        try:
            await broadcaster.send(event, payload)
            return True
        except Exception as exc:
            if attempt >= max_retries:
                logger.warning(
                    "Broadcast %s failed after %d attempt(s): %s", event, attempt + 1, exc
                )
                return False
            delay = base_delay * (2 ** attempt)
            logger.debug("Broadcast %s failed (attempt %d), retrying in %.2fs", event, attempt + 1, delay)
            if delay > 0:
                await asyncio.sleep(delay)
    return False


class TokenBatcher:
    """
    Buffers streamed tokens and publishes them in batches.

    A batch is sent once the buffered text reaches *batch_size* characters.
    When a batch cannot be delivered after the retry ceiling the batcher
    switches to degraded mode: each token is published on its own, and
    tokens that still fail stay queued for the next flush.

    Parameters
    ----------
    broadcaster:
        Destination channel.
    batch_size:
        Characters per batch.
    max_retries:
        Retries per publish before giving up on it.
    base_delay:
        First backoff delay in seconds.
    context:
        Extra fields merged into every payload (session id, round...).
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        *,
        batch_size: int = 50,
        max_retries: int = 3,
        base_delay: float = 0.1,
        context: dict[str, Any] | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._batch_size = max(1, batch_size)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._context = dict(context or {})
        self._tokens: list[str] = []
        self._size = 0
        self.degraded = False
        self.batches_sent = 0

    @property
    def pending(self) -> str:
        return "".join(self._tokens)

    def set_context(self, **fields: Any) -> None:
        self._context.update(fields)

    async def add(self, token: str) -> None:
        if not token:
            return
        self._tokens.append(token)
        self._size += len(token)
        if self.degraded or self._size >= self._batch_size:
            await self.flush()

    async def flush(self) -> None:
        """Publish everything buffered."""
        if not self._tokens:
            return

        if not self.degraded:
            if await self._publish("".join(self._tokens)):
                self._clear()
                return
            logger.warning(
                "Token batch undeliverable, degrading to per-token publishing (%d tokens)",
                len(self._tokens),
            )
            self.degraded = True

        remaining: list[str] = []
        for i, token in enumerate(self._tokens):
            if not await self._publish(token):
                remaining = self._tokens[i:]
                break
        self._tokens = remaining
        self._size = sum(len(t) for t in remaining)
        if remaining:
            logger.warning("%d token(s) still queued for broadcast", len(remaining))

    async def _publish(self, text: str) -> bool:
        ok = await publish_with_retry(
            self._broadcaster,
            EVENT_TOKEN_BATCH,
            {**self._context, "content": text},
            max_retries=self._max_retries,
            base_delay=self._base_delay,
        )
        if ok:
            self.batches_sent += 1
        return ok

    def _clear(self) -> None:
        self._tokens = []
        self._size = 0
