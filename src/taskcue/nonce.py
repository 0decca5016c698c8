"""Process-local nonce allocation for one identity."""

from __future__ import annotations

import asyncio
import logging
import time

from taskcue.models import PendingSubmission, TxKind
from taskcue.registry import TaskRegistry

logger = logging.getLogger(__name__)


class NonceManager:
    """
    Hands out strictly increasing nonces to concurrent submitters.

    The registry orders each identity's transactions by nonce and rejects gaps
    and duplicates, so reading the network's count before every call races
    with our own in-flight submissions. Instead the counter lives here, seeded
    from the registry and resynchronized whenever the registry reports an
    ordering error.

    Allocation and resync share one lock; no caller observes the counter
    mid-update.

    Example:
        nonces = NonceManager(registry, address)
        await nonces.initialize()
        nonce = await nonces.allocate_next(TxKind.CLAIM, task_id=7)
        try:
            await registry.claim_task(7, tx=TxParams(address, nonce, price, limit))
        except OrderingConflict:
            await nonces.resync()
        finally:
            nonces.settle(nonce)
    """

    def __init__(self, registry: TaskRegistry, identity: str) -> None:
        self.registry = registry
        self.identity = identity
        self.pending: dict[int, PendingSubmission] = {}
        self._next: int | None = None
        self._lock = asyncio.Lock()
        self.resync_count = 0

    @property
    def next_nonce(self) -> int | None:
        """Next value ``allocate_next`` will return, or None before seeding."""
        return self._next

    async def initialize(self) -> int:
        """Seed the counter from the registry's authoritative count."""
        async with self._lock:
            self._next = await self.registry.get_transaction_count(self.identity)
            logger.debug("Nonce for %s seeded at %d", self.identity, self._next)
            return self._next

    async def allocate_next(
        self,
        kind: TxKind,
        *,
        task_id: int | None = None,
        gas_price: int = 0,
    ) -> int:
        """Reserve the next nonce and record it as pending."""
        async with self._lock:
            if self._next is None:
                self._next = await self.registry.get_transaction_count(self.identity)
            nonce = self._next
            self._next += 1
            self.pending[nonce] = PendingSubmission(
                nonce=nonce,
                kind=kind,
                task_id=task_id,
                gas_price=gas_price,
                submitted_at=time.time(),
            )
            return nonce

    def settle(self, nonce: int) -> PendingSubmission | None:
        """Forget a nonce whose transaction has resolved either way."""
        return self.pending.pop(nonce, None)

    async def resync(self) -> int:
        """
        Reset the counter to the registry's authoritative next nonce.

        Pending entries at or above the authoritative value never landed and
        are discarded. Must run before any further submission after an
        ordering error.
        """
        async with self._lock:
            authoritative = await self.registry.get_transaction_count(self.identity)
            previous = self._next
            self._next = authoritative
            dropped = [n for n in self.pending if n >= authoritative]
            for nonce in dropped:
                del self.pending[nonce]
            self.resync_count += 1
            if previous != authoritative:
                logger.info(
                    "Nonce for %s resynced %s -> %d (%d speculative dropped)",
                    self.identity, previous, authoritative, len(dropped),
                )
            return authoritative
