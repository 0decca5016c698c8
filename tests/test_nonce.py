"""Nonce allocator tests."""

import asyncio

import pytest

from taskcue.errors import StaleNonce, Underpriced
from taskcue.ledger import SqliteRegistry
from taskcue.models import CLAIM_GAS_LIMIT, SUBMIT_TASK_GAS_LIMIT, TxKind, TxParams
from taskcue.nonce import NonceManager

SENDER = "0x" + "a" * 40


@pytest.fixture
async def registry():
    r = SqliteRegistry(":memory:")
    await r.fund(SENDER, 10**18)
    yield r
    await r.close()


async def submit(registry, nonce):
    tx = TxParams(SENDER, nonce, await registry.gas_price(), SUBMIT_TASK_GAS_LIMIT)
    return await registry.submit_task("compute", "{}", tx=tx)


class TestAllocation:
    """Sequential and concurrent allocation."""

    async def test_initialize_seeds_from_registry(self, registry):
        """initialize() reads the authoritative count."""
        await submit(registry, 0)
        await submit(registry, 1)

        nonces = NonceManager(registry, SENDER)
        assert await nonces.initialize() == 2
        assert nonces.next_nonce == 2

    async def test_sequential_allocation(self, registry):
        """Allocations are consecutive and tracked as pending."""
        nonces = NonceManager(registry, SENDER)
        await nonces.initialize()

        allocated = [await nonces.allocate_next(TxKind.CLAIM, task_id=i) for i in range(3)]
        assert allocated == [0, 1, 2]
        assert set(nonces.pending) == {0, 1, 2}
        assert nonces.pending[1].task_id == 1
        assert nonces.pending[1].kind == TxKind.CLAIM

    async def test_lazy_seed(self, registry):
        """The first allocation seeds the counter if initialize() was skipped."""
        await submit(registry, 0)
        nonces = NonceManager(registry, SENDER)

        assert nonces.next_nonce is None
        assert await nonces.allocate_next(TxKind.SUBMIT_TASK) == 1

    async def test_concurrent_allocation_is_unique(self, registry):
        """Concurrent callers never receive the same nonce."""
        nonces = NonceManager(registry, SENDER)
        await nonces.initialize()

        allocated = await asyncio.gather(
            *[nonces.allocate_next(TxKind.CLAIM) for _ in range(20)]
        )
        assert sorted(allocated) == list(range(20))

    async def test_concurrent_submissions_all_land(self, registry):
        """Allocated nonces submitted in order are all accepted."""
        nonces = NonceManager(registry, SENDER)
        await nonces.initialize()

        async def send():
            nonce = await nonces.allocate_next(TxKind.SUBMIT_TASK)
            try:
                return await submit(registry, nonce)
            finally:
                nonces.settle(nonce)

        receipts = await asyncio.gather(*[send() for _ in range(5)])

        assert sorted(r.nonce for r in receipts) == [0, 1, 2, 3, 4]
        assert await registry.get_transaction_count(SENDER) == 5
        assert nonces.pending == {}

    async def test_settle_unknown_nonce(self, registry):
        """Settling a nonce twice is harmless."""
        nonces = NonceManager(registry, SENDER)
        nonce = await nonces.allocate_next(TxKind.CLAIM)
        assert nonces.settle(nonce) is not None
        assert nonces.settle(nonce) is None


class TestResync:
    """Recovering from ordering errors."""

    async def test_resync_discards_speculative_nonces(self, registry):
        """Nonces that never landed are dropped and reissued."""
        nonces = NonceManager(registry, SENDER)
        await nonces.initialize()
        for _ in range(3):
            await nonces.allocate_next(TxKind.CLAIM)

        assert await nonces.resync() == 0
        assert nonces.next_nonce == 0
        assert nonces.pending == {}
        assert nonces.resync_count == 1
        assert await nonces.allocate_next(TxKind.CLAIM) == 0

    async def test_resync_keeps_landed_entries(self, registry):
        """Pending entries below the authoritative count are kept."""
        nonces = NonceManager(registry, SENDER)
        await nonces.initialize()
        first = await nonces.allocate_next(TxKind.SUBMIT_TASK)
        await nonces.allocate_next(TxKind.SUBMIT_TASK)
        await submit(registry, first)

        assert await nonces.resync() == 1
        assert set(nonces.pending) == {0}

    async def test_recovers_from_external_submission(self, registry):
        """Another process using the same identity forces a resync."""
        ours = NonceManager(registry, SENDER)
        theirs = NonceManager(registry, SENDER)
        await ours.initialize()
        await theirs.initialize()

        await submit(registry, await theirs.allocate_next(TxKind.SUBMIT_TASK))

        stale = await ours.allocate_next(TxKind.SUBMIT_TASK)
        with pytest.raises(StaleNonce):
            await submit(registry, stale)
        ours.settle(stale)

        await ours.resync()
        receipt = await submit(registry, await ours.allocate_next(TxKind.SUBMIT_TASK))
        assert receipt.nonce == 1

    async def test_resync_after_underpriced(self, registry):
        """A rejected bid leaves the authoritative count unchanged."""
        await submit(registry, 0)
        await registry.set_gas_price(5 * 10**9)

        nonces = NonceManager(registry, SENDER)
        await nonces.initialize()
        nonce = await nonces.allocate_next(TxKind.CLAIM)
        with pytest.raises(Underpriced):
            await registry.claim_task(1, tx=TxParams(SENDER, nonce, 10**9, CLAIM_GAS_LIMIT))

        assert await nonces.resync() == 1
