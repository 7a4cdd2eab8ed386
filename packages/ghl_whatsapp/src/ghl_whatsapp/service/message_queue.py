"""
Outbound Delivery Queue

Per-tenant FIFO with serialized sends (drip mode).

- One worker task per tenant; at most one send in flight per tenant
- A minimum gap separates the end of one send from the start of the next
- Failed sends go back to the tail until max_attempts is reached, then are dropped
- Pause lets the in-flight send finish; resume restarts the worker
- Rate limits can change at runtime and apply from the next dequeue

Queue contents are process memory only and are lost on restart.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ghl_whatsapp.persistence.models import ContentType
from ghl_whatsapp.routing.identity_resolver import clean_phone
from ghl_whatsapp.service.origin_tracker import OriginTracker
from ghl_whatsapp.service.outbound_handler import build_payload

logger = logging.getLogger(__name__)

DEFAULT_DELAY_MS = 5000
MAX_ATTEMPTS = 3


class RateLimitConfig(BaseModel):
    """Per-tenant drip settings."""

    delay_between_messages: int = Field(default=DEFAULT_DELAY_MS, ge=0, description="Milliseconds between sends")
    messages_per_second: float | None = Field(default=None, gt=0)

    @property
    def min_gap_seconds(self) -> float:
        gap = self.delay_between_messages / 1000
        if self.messages_per_second:
            gap = max(gap, 1 / self.messages_per_second)
        return gap


@dataclass
class QueuedMessage:
    """An outbound message waiting for (or in) delivery."""

    tenant_id: UUID
    to: str
    content: str | None
    kind: ContentType = ContentType.TEXT
    media: str | None = None
    file_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    attempts: int = 0
    queued_at: datetime = field(default_factory=datetime.utcnow)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "to": self.to,
            "type": self.kind.value,
            "queued_at": self.queued_at.isoformat(),
            "attempts": self.attempts,
        }


@dataclass
class TenantQueue:
    """Queue state for one tenant."""

    rate_limit: RateLimitConfig
    custom_rate_limit: bool = False
    pending: deque = field(default_factory=deque)
    paused: bool = False
    in_flight: QueuedMessage | None = None
    last_finished_at: float | None = None
    worker: asyncio.Task | None = None

    @property
    def processing(self) -> bool:
        return self.worker is not None


SendFunc = Callable[[QueuedMessage], Awaitable[Any]]
FailureFunc = Callable[[QueuedMessage, Exception], Awaitable[None]]


class OutboundQueue:
    """
    Per-tenant outbound queues sharing one sender.

    Args:
        sender: Coroutine that delivers one message; raising counts as a failed attempt
        origin: Tracker marked at enqueue time so echoes are not re-synced
        default_delay_ms: Gap used when a tenant has no rate limit of its own
        max_attempts: Attempts before a message is dropped
        on_failed: Called once per message dropped after its last attempt
        clock / sleep: Injectable time source for tests
    """

    def __init__(
        self,
        sender: SendFunc,
        origin: OriginTracker | None = None,
        default_delay_ms: int = DEFAULT_DELAY_MS,
        max_attempts: int = MAX_ATTEMPTS,
        on_failed: FailureFunc | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._sender = sender
        self._origin = origin
        self.default_delay_ms = default_delay_ms
        self.max_attempts = max_attempts
        self._on_failed = on_failed
        self._clock = clock
        self._sleep = sleep
        self._queues: dict[UUID, TenantQueue] = {}

    def _state(self, tenant_id: UUID) -> TenantQueue:
        state = self._queues.get(tenant_id)
        if state is None:
            state = TenantQueue(rate_limit=RateLimitConfig(delay_between_messages=self.default_delay_ms))
            self._queues[tenant_id] = state
        return state

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue(
        self,
        tenant_id: UUID,
        to: str,
        content: str | None,
        kind: ContentType = ContentType.TEXT,
        media: str | None = None,
        file_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> QueuedMessage:
        """
        Accept a message for delivery.

        Raises:
            InvalidMessageError: if the message cannot ever be sent
        """
        build_payload(to, kind, content, media, file_name)

        message = QueuedMessage(
            tenant_id=tenant_id,
            to=to,
            content=content,
            kind=kind,
            media=media,
            file_name=file_name,
            metadata=metadata or {},
        )
        state = self._state(tenant_id)
        state.pending.append(message)

        if self._origin is not None:
            self._origin.mark(tenant_id, clean_phone(to))

        logger.info(
            f"Message queued for {tenant_id} to {to}",
            extra={"tenant_id": str(tenant_id), "queue_length": len(state.pending), "queued_id": message.id},
        )

        self._ensure_worker(tenant_id, state)
        return message

    def _ensure_worker(self, tenant_id: UUID, state: TenantQueue) -> None:
        if state.worker is None and state.pending and not state.paused:
            state.worker = asyncio.create_task(self._run(tenant_id, state), name=f"outbound-queue-{tenant_id}")

    # =========================================================================
    # Worker
    # =========================================================================

    async def _wait_for_gap(self, state: TenantQueue) -> None:
        """Sleep until the current rate limit allows the next send."""
        while state.last_finished_at is not None and not state.paused:
            remaining = state.last_finished_at + state.rate_limit.min_gap_seconds - self._clock()
            if remaining <= 0:
                return
            await self._sleep(remaining)

    async def _run(self, tenant_id: UUID, state: TenantQueue) -> None:
        try:
            while state.pending and not state.paused:
                await self._wait_for_gap(state)
                if state.paused or not state.pending:
                    break

                message = state.pending.popleft()
                state.in_flight = message
                try:
                    await self._sender(message)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    await self._handle_failure(tenant_id, state, message, e)
                else:
                    logger.info(
                        f"Queue: sent message to {message.to}",
                        extra={"tenant_id": str(tenant_id), "remaining": len(state.pending)},
                    )
                finally:
                    state.in_flight = None
                    state.last_finished_at = self._clock()
        finally:
            if state.worker is asyncio.current_task():
                state.worker = None

    async def _handle_failure(
        self, tenant_id: UUID, state: TenantQueue, message: QueuedMessage, error: Exception
    ) -> None:
        message.attempts += 1
        if message.attempts < self.max_attempts:
            state.pending.append(message)
            logger.warning(
                f"Queue: send failed, re-queued (attempt {message.attempts}/{self.max_attempts})",
                extra={"tenant_id": str(tenant_id), "to": message.to, "error": str(error)},
            )
            return

        logger.error(
            f"Queue: message to {message.to} failed after {self.max_attempts} attempts",
            extra={"tenant_id": str(tenant_id), "queued_id": message.id, "error": str(error)},
        )
        if self._on_failed is not None:
            try:
                await self._on_failed(message, error)
            except Exception:
                logger.error("Queue failure callback raised", exc_info=True)

    # =========================================================================
    # Runtime control
    # =========================================================================

    def set_rate_limit(
        self,
        tenant_id: UUID,
        config: RateLimitConfig | dict[str, Any],
        custom: bool = True,
    ) -> RateLimitConfig:
        """
        Merge the given settings into the tenant's rate limit.

        custom=False applies a default that a later tenant override replaces
        and that does not count as one.
        """
        if isinstance(config, RateLimitConfig):
            updates = config.model_dump(exclude_unset=True)
        else:
            updates = RateLimitConfig.model_validate(config).model_dump(exclude_unset=True)

        state = self._state(tenant_id)
        state.rate_limit = state.rate_limit.model_copy(update=updates)
        state.custom_rate_limit = state.custom_rate_limit or custom

        logger.info(
            "Rate limit updated",
            extra={"tenant_id": str(tenant_id), **state.rate_limit.model_dump()},
        )
        return state.rate_limit

    def has_custom_rate_limit(self, tenant_id: UUID) -> bool:
        state = self._queues.get(tenant_id)
        return bool(state and state.custom_rate_limit)

    def pause(self, tenant_id: UUID) -> None:
        """Stop dequeuing; an in-flight send still completes."""
        self._state(tenant_id).paused = True
        logger.info("Queue paused", extra={"tenant_id": str(tenant_id)})

    def resume(self, tenant_id: UUID) -> None:
        """Restart dequeuing if anything is pending."""
        state = self._state(tenant_id)
        state.paused = False
        self._ensure_worker(tenant_id, state)
        logger.info("Queue resumed", extra={"tenant_id": str(tenant_id), "queue_length": len(state.pending)})

    def clear(self, tenant_id: UUID) -> int:
        """Drop every pending message. Returns how many were dropped."""
        state = self._queues.get(tenant_id)
        if state is None:
            return 0
        cleared = len(state.pending)
        state.pending.clear()
        logger.info("Queue cleared", extra={"tenant_id": str(tenant_id), "cleared": cleared})
        return cleared

    def status(self, tenant_id: UUID) -> dict[str, Any]:
        """Snapshot of a tenant's queue."""
        state = self._queues.get(tenant_id) or TenantQueue(
            rate_limit=RateLimitConfig(delay_between_messages=self.default_delay_ms)
        )
        return {
            "queue_length": len(state.pending),
            "processing": state.processing,
            "paused": state.paused,
            "in_flight": state.in_flight.summary() if state.in_flight else None,
            "rate_limit": state.rate_limit.model_dump(),
            "pending": [message.summary() for message in state.pending],
        }

    async def remove_tenant(self, tenant_id: UUID) -> None:
        """Stop the worker and forget all state for a tenant."""
        state = self._queues.pop(tenant_id, None)
        if state is None or state.worker is None:
            return
        state.worker.cancel()
        try:
            await state.worker
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        for tenant_id in list(self._queues):
            await self.remove_tenant(tenant_id)
