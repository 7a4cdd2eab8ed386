"""
Origin Tracker

Short-lived marks that say "this system just sent to that number".

An outbound echo observed on the session is only mirrored to the CRM when
no mark exists for its destination; a mark means the CRM already has it.
Expired marks are cleared on read and by a periodic sweep.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from uuid import UUID

from ghl_whatsapp.routing.identity_resolver import clean_phone

logger = logging.getLogger(__name__)


class OriginTracker:
    """In-process TTL map keyed by (tenant, phone)."""

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._marks: dict[tuple[UUID, str], float] = {}

    def __len__(self) -> int:
        return len(self._marks)

    def mark(self, tenant_id: UUID, phone: str) -> None:
        """Record that a send to phone was just initiated by this system."""
        key = (tenant_id, clean_phone(phone))
        self._marks[key] = self._clock()
        logger.debug("Origin marked", extra={"tenant_id": str(tenant_id), "phone": key[1]})

    def is_origin(self, tenant_id: UUID, phone: str) -> bool:
        """True iff a mark for (tenant, phone) exists and is younger than the TTL."""
        key = (tenant_id, clean_phone(phone))
        marked_at = self._marks.get(key)
        if marked_at is None:
            return False
        if self._clock() - marked_at > self.ttl_seconds:
            del self._marks[key]
            return False
        return True

    def sweep(self) -> int:
        """Drop every expired mark. Returns how many were removed."""
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, marked_at in self._marks.items() if marked_at < cutoff]
        for key in expired:
            del self._marks[key]
        return len(expired)

    def forget_tenant(self, tenant_id: UUID) -> None:
        for key in [k for k in self._marks if k[0] == tenant_id]:
            del self._marks[key]

    async def run_sweeper(self, interval_seconds: float = 10.0) -> None:
        """Sweep forever; run as a background task and cancel to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("Swept expired origin marks", extra={"removed": removed, "remaining": len(self)})
