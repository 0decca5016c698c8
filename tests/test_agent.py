"""Worker agent tests: claiming, contention, retries, submission, lifecycle."""

import asyncio
import random

import pytest

from taskcue import Operation, Requester, TaskExecutor, WorkerAgent
from taskcue.errors import NoBalance, NotAssignedWorker, RegistryUnavailable, StaleNonce, Underpriced
from taskcue.executor import HANDLERS
from taskcue.ledger import SqliteRegistry
from taskcue.models import CLAIM_GAS_LIMIT, ClaimOutcome, TxParams, same_identity

REQUESTER = "0x" + "1" * 40
WORKER_A = "0x" + "a" * 40
WORKER_B = "0x" + "b" * 40
FUNDS = 10**18
REWARD = 10**15


class RacingRegistry(SqliteRegistry):
    """Lets a rival claim first, right before our claim lands."""

    def __init__(self, rival: str, races: int = 1):
        super().__init__(":memory:")
        self.rival = rival
        self.races = races

    async def claim_task(self, task_id, *, tx):
        if self.races > 0 and not same_identity(tx.sender, self.rival):
            self.races -= 1
            rival_tx = TxParams(
                self.rival,
                await self.get_transaction_count(self.rival),
                await self.gas_price(),
                CLAIM_GAS_LIMIT,
            )
            await super().claim_task(task_id, tx=rival_tx)
        return await super().claim_task(task_id, tx=tx)


class ConflictRegistry(SqliteRegistry):
    """Rejects the first N claims with an ordering conflict."""

    def __init__(self, conflicts: int):
        super().__init__(":memory:")
        self.conflicts = conflicts
        self.claim_bids: list[int] = []
        self.events: list[str] = []

    async def claim_task(self, task_id, *, tx):
        self.claim_bids.append(tx.gas_price)
        self.events.append("claim")
        if self.conflicts > 0:
            self.conflicts -= 1
            raise StaleNonce("nonce too low")
        return await super().claim_task(task_id, tx=tx)


class RecordingRandom(random.Random):
    """Seeded RNG that logs each jitter draw into ``events``."""

    events: list[str] | None = None

    def uniform(self, a, b):
        if self.events is not None:
            self.events.append("jitter")
        return super().uniform(a, b)


class FlakyResultRegistry(SqliteRegistry):
    """Rejects the first N result submissions as underpriced."""

    def __init__(self, failures: int, error=Underpriced):
        super().__init__(":memory:")
        self.failures = failures
        self.error = error
        self.result_calls = 0

    async def submit_result(self, task_id, result, *, tx):
        self.result_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error("transaction underpriced")
        return await super().submit_result(task_id, result, tx=tx)


async def make_board(registry=None, tasks=0, worker_funds=FUNDS):
    """Funded ledger plus a requester that has posted ``tasks`` multiply tasks."""
    registry = registry or SqliteRegistry(":memory:")
    await registry.fund(REQUESTER, 100 * FUNDS)
    for worker in (WORKER_A, WORKER_B):
        if worker_funds:
            await registry.fund(worker, worker_funds)
    requester = Requester(registry, REQUESTER)
    for i in range(tasks):
        await requester.submit(Operation.MULTIPLY, [i, 2], reward=REWARD)
    return registry, requester


def make_agent(registry, identity=WORKER_A, **kwargs):
    options = dict(
        name=f"worker-{identity[2]}",
        poll_interval=0.05,
        claim_jitter=0,
        backoff_base=0.01,
        stats_interval=None,
        balance_check_interval=None,
        skip_existing=False,
    )
    options.update(kwargs)
    return WorkerAgent(registry, identity, **options)


def counting_executor():
    """Executor whose multiply handler records each call."""
    calls = []

    def multiply(value):
        calls.append(value)
        return HANDLERS[Operation.MULTIPLY](value)

    handlers = dict(HANDLERS)
    handlers[Operation.MULTIPLY] = multiply
    return TaskExecutor(handlers=handlers), calls


class TestClaiming:
    """Single-agent claim flow."""

    async def test_claim_execute_submit(self):
        """A tick claims, executes and settles an open task."""
        registry, _ = await make_board(tasks=1)
        agent = make_agent(registry)
        await agent.initialize()

        summary = await agent.poll_once()

        task = await registry.get_task(1)
        assert task.completed
        assert task.claimed_by(WORKER_A)
        assert task.result == "0"
        assert summary.claims_won == 1
        assert summary.completed == 1
        assert summary.outcomes == {1: ClaimOutcome.CLAIMED}
        assert agent.last_processed_task_id == 1
        assert agent.claimed_tasks == {}
        assert await registry.balances(WORKER_A) == REWARD

    async def test_result_matches_operation(self):
        """The submitted result is the operation's JSON output."""
        registry, requester = await make_board()
        task_id = await requester.submit(Operation.MULTIPLY, [42, 2], reward=REWARD)
        agent = make_agent(registry)
        await agent.initialize()

        await agent.poll_once()

        assert (await registry.get_task(task_id)).result == "84"

    async def test_skip_existing(self):
        """By default tasks posted before startup are ignored."""
        registry, requester = await make_board(tasks=2)
        agent = make_agent(registry, skip_existing=True)
        await agent.initialize()
        assert agent.last_processed_task_id == 2

        await requester.submit(Operation.MULTIPLY, [3, 3], reward=REWARD)
        summary = await agent.poll_once()

        assert summary.outcomes == {3: ClaimOutcome.CLAIMED}
        assert not (await registry.get_task(1)).is_claimed

    async def test_claims_capped_per_tick(self):
        """At most max_claims_per_tick claims per tick; the rest wait."""
        registry, _ = await make_board(tasks=3)
        agent = make_agent(registry, max_claims_per_tick=2)
        await agent.initialize()

        summary = await agent.poll_once()
        assert summary.claims_attempted == 2
        assert agent.last_processed_task_id == 2
        assert not (await registry.get_task(3)).is_claimed

        summary = await agent.poll_once()
        assert summary.outcomes == {3: ClaimOutcome.CLAIMED}
        assert agent.last_processed_task_id == 3

    async def test_idempotent_repoll(self):
        """Polling an unchanged board sends no further transactions."""
        registry, _ = await make_board(tasks=2)
        agent = make_agent(registry)
        await agent.initialize()
        await agent.poll_once()
        sent = await registry.get_transaction_count(WORKER_A)

        summary = await agent.poll_once()
        await agent.poll_once()

        assert summary.claims_attempted == 0
        assert await registry.get_transaction_count(WORKER_A) == sent

    async def test_claimed_by_other_is_skipped(self):
        """Tasks another worker holds are passed over without a transaction."""
        registry, _ = await make_board(tasks=1)
        rival = make_agent(registry, WORKER_B)
        await rival.initialize()
        await rival.claim(1)

        agent = make_agent(registry)
        await agent.initialize()
        summary = await agent.poll_once()

        assert summary.claims_attempted == 0
        assert agent.last_processed_task_id == 1
        assert await registry.get_transaction_count(WORKER_A) == 0


class TestContention:
    """Losing races and ordering conflicts."""

    async def test_lost_race(self):
        """A rival landing first is a lost race, not an error."""
        registry, _ = await make_board(RacingRegistry(WORKER_B), tasks=2)
        agent = make_agent(registry, max_claims_per_tick=1)
        await agent.initialize()

        summary = await agent.poll_once()

        assert summary.outcomes == {1: ClaimOutcome.LOST_RACE}
        assert summary.claims_lost == 1
        assert agent.claims_lost == 1
        assert agent.last_processed_task_id == 1
        assert (await registry.get_task(1)).claimed_by(WORKER_B)

    async def test_lost_race_keeps_nonce_in_sync(self):
        """The reverted claim consumed its nonce; the next claim needs no resync."""
        registry, _ = await make_board(RacingRegistry(WORKER_B), tasks=2)
        agent = make_agent(registry)
        await agent.initialize()

        summary = await agent.poll_once()

        assert summary.outcomes == {1: ClaimOutcome.LOST_RACE, 2: ClaimOutcome.CLAIMED}
        assert agent.nonces.resync_count == 0
        assert (await registry.get_task(2)).completed

    async def test_ordering_conflict_retries_with_higher_bid(self):
        """A stale nonce resyncs and retries with a larger gas bid."""
        registry, _ = await make_board(ConflictRegistry(conflicts=1), tasks=1)
        agent = make_agent(registry)
        await agent.initialize()
        base = await registry.gas_price()

        outcome = await agent.claim(1)

        assert outcome == ClaimOutcome.CLAIMED
        assert agent.nonces.resync_count == 1
        assert registry.claim_bids == [base * 120 // 100, base * 140 // 100]

    async def test_retries_exhausted(self):
        """After the retry ceiling the claim is given up for this tick."""
        registry, _ = await make_board(ConflictRegistry(conflicts=10), tasks=1)
        agent = make_agent(registry, claim_retries=2)
        await agent.initialize()

        summary = await agent.poll_once()

        assert summary.outcomes == {1: ClaimOutcome.EXHAUSTED}
        assert len(registry.claim_bids) == 2
        assert agent.last_processed_task_id == 0
        assert not (await registry.get_task(1)).is_claimed

    async def test_exhausted_task_is_retried_next_tick(self):
        """A claim that ran out of retries is attempted again later."""
        registry, _ = await make_board(ConflictRegistry(conflicts=2), tasks=1)
        agent = make_agent(registry, claim_retries=2)
        await agent.initialize()

        await agent.poll_once()
        summary = await agent.poll_once()

        assert summary.outcomes == {1: ClaimOutcome.CLAIMED}
        assert (await registry.get_task(1)).completed
        assert agent.last_processed_task_id == 1

    async def test_jitter_before_every_claim_in_tick(self):
        """With several open tasks, each claim in the tick waits a random delay first."""
        registry, _ = await make_board(ConflictRegistry(conflicts=0), tasks=3)
        rng = RecordingRandom(7)
        rng.events = registry.events
        agent = make_agent(registry, claim_jitter=0.01, rng=rng)
        await agent.initialize()

        summary = await agent.poll_once()

        assert summary.claims_won == 2
        assert registry.events == ["jitter", "claim", "jitter", "claim"]

    async def test_retries_are_not_jittered(self):
        """Only the first attempt waits; a retry after a conflict uses backoff alone."""
        registry, _ = await make_board(ConflictRegistry(conflicts=1), tasks=1)
        rng = RecordingRandom(7)
        rng.events = registry.events
        agent = make_agent(registry, claim_jitter=0.01, rng=rng)
        await agent.initialize()

        outcome = await agent.claim(1, jitter=True)

        assert outcome == ClaimOutcome.CLAIMED
        assert registry.events == ["jitter", "claim", "claim"]

    async def test_lone_task_is_claimed_without_jitter(self):
        """A single open task leaves no one to spread out from."""
        registry, _ = await make_board(ConflictRegistry(conflicts=0), tasks=1)
        rng = RecordingRandom(7)
        rng.events = registry.events
        agent = make_agent(registry, claim_jitter=0.01, rng=rng)
        await agent.initialize()

        await agent.poll_once()

        assert registry.events == ["claim"]

    async def test_two_agents_share_the_board(self):
        """Racing agents complete every task exactly once."""
        registry = SqliteRegistry(":memory:", block_time=0.005)
        registry, _ = await make_board(registry, tasks=6)
        agent_a = make_agent(registry, WORKER_A, max_claims_per_tick=6)
        agent_b = make_agent(registry, WORKER_B, max_claims_per_tick=6)
        await agent_a.initialize()
        await agent_b.initialize()

        for _ in range(3):
            await asyncio.gather(agent_a.poll_once(), agent_b.poll_once())

        tasks = await registry.get_latest_tasks(10)
        assert all(t.completed for t in tasks)
        assert agent_a.completed_count + agent_b.completed_count == 6
        earned = await registry.balances(WORKER_A) + await registry.balances(WORKER_B)
        assert earned == 6 * REWARD


class TestFunds:
    """Running out of gas money."""

    async def test_insufficient_funds_stops_claiming(self):
        """No funds: one attempt, no more claims, high-water mark unmoved."""
        registry, _ = await make_board(tasks=2, worker_funds=0)
        agent = make_agent(registry)
        await agent.initialize()

        summary = await agent.poll_once()

        assert summary.outcomes == {1: ClaimOutcome.INSUFFICIENT_FUNDS}
        assert summary.claims_attempted == 1
        assert agent.last_processed_task_id == 0
        assert await registry.get_transaction_count(WORKER_A) == 0
        assert agent.nonces.next_nonce == 0

    async def test_tasks_revisited_after_funding(self):
        """Once funded, the skipped tasks are claimed on a later tick."""
        registry, _ = await make_board(tasks=2, worker_funds=0)
        agent = make_agent(registry)
        await agent.initialize()
        await agent.poll_once()

        await registry.fund(WORKER_A, FUNDS)
        summary = await agent.poll_once()

        assert summary.claims_won == 2
        assert agent.last_processed_task_id == 2

    async def test_withdraw_earnings(self):
        """Earnings can be withdrawn once; the second attempt has nothing."""
        registry, _ = await make_board(tasks=1)
        agent = make_agent(registry)
        await agent.initialize()
        await agent.poll_once()

        receipt = await agent.withdraw_earnings()
        assert receipt.amount == REWARD
        assert await registry.balances(WORKER_A) == 0

        with pytest.raises(NoBalance):
            await agent.withdraw_earnings()

    async def test_auto_withdraw(self):
        """check_balance withdraws once earnings reach the threshold."""
        registry, _ = await make_board(tasks=1)
        agent = make_agent(registry, auto_withdraw_threshold=REWARD)
        await agent.initialize()
        await agent.poll_once()

        await agent.check_balance()

        assert await registry.balances(WORKER_A) == 0

    async def test_low_balance_warning(self, caplog):
        """A low spendable balance is logged as a warning."""
        registry, _ = await make_board(worker_funds=10**12)
        agent = make_agent(registry)

        with caplog.at_level("WARNING", logger="taskcue.agent"):
            await agent.check_balance()

        assert "Low balance" in caplog.text


class TestSubmission:
    """Result submission retries and abandonment."""

    async def test_result_cached_and_resubmitted(self):
        """A transient submission failure resubmits without re-executing."""
        executor, calls = counting_executor()
        registry, _ = await make_board(FlakyResultRegistry(failures=1), tasks=1)
        agent = make_agent(registry, executor=executor)
        await agent.initialize()

        first = await agent.poll_once()
        assert first.completed == 0
        assert agent.last_processed_task_id == 0
        assert agent.claimed_tasks[1].result == "0"

        second = await agent.poll_once()
        assert second.resubmitted == 1
        assert second.completed == 1
        assert len(calls) == 1
        assert (await registry.get_task(1)).completed
        assert agent.last_processed_task_id == 1
        assert agent.claimed_tasks == {}

    async def test_resubmits_outside_window(self):
        """Held tasks that scrolled out of the window are still settled."""
        executor, calls = counting_executor()
        registry, requester = await make_board(FlakyResultRegistry(failures=1), tasks=1)
        agent = make_agent(registry, executor=executor, window=1)
        await agent.initialize()
        await agent.poll_once()

        await requester.submit(Operation.MULTIPLY, [5, 5], reward=REWARD)
        await requester.submit(Operation.MULTIPLY, [6, 6], reward=REWARD)
        await agent.poll_once()

        assert (await registry.get_task(1)).completed
        assert calls.count([0, 2]) == 1

    async def test_unreachable_registry_on_submit(self):
        """An unknown-outcome failure resyncs and propagates out of the tick."""
        registry, _ = await make_board(FlakyResultRegistry(failures=1, error=RegistryUnavailable), tasks=1)
        agent = make_agent(registry)
        await agent.initialize()

        with pytest.raises(RegistryUnavailable):
            await agent.poll_once()
        assert agent.nonces.resync_count == 1

        summary = await agent.poll_once()
        assert summary.completed == 1

    async def test_execution_failure_abandons(self):
        """An unsupported payload is abandoned and reported once."""
        registry, requester = await make_board()
        await requester.submit("no_such_operation", 1, reward=REWARD)
        agent = make_agent(registry)
        failures = []

        @agent.on_failure
        def failed(task_id, error):
            failures.append(task_id)

        await agent.initialize()
        summary = await agent.poll_once()

        assert summary.abandoned == 1
        assert failures == [1]
        assert agent.abandoned_count == 1
        assert agent.last_processed_task_id == 1
        assert not (await registry.get_task(1)).completed

    async def test_result_reverted_for_wrong_worker_abandons(self):
        """A result revert such as NotAssignedWorker abandons the task."""
        registry, _ = await make_board(FlakyResultRegistry(failures=1, error=NotAssignedWorker), tasks=1)
        agent = make_agent(registry)
        await agent.initialize()

        summary = await agent.poll_once()

        assert summary.abandoned == 1
        assert 1 not in agent.claimed_tasks
        assert agent.last_processed_task_id == 1
        assert registry.result_calls == 1

    async def test_abandoned_task_never_reexecuted(self):
        """Rewinding the high-water mark does not re-run an abandoned task."""
        registry, requester = await make_board()
        await requester.submit("no_such_operation", 1, reward=REWARD)
        agent = make_agent(registry)
        await agent.initialize()
        await agent.poll_once()
        sent = await registry.get_transaction_count(WORKER_A)

        agent.last_processed_task_id = 0
        summary = await agent.poll_once()

        assert summary.abandoned == 0
        assert agent.abandoned_count == 1
        assert await registry.get_transaction_count(WORKER_A) == sent


class TestCallbacks:
    """Event callbacks."""

    async def test_claimed_and_completed_events(self):
        """Sync and async callbacks receive their arguments."""
        registry, _ = await make_board(tasks=1)
        agent = make_agent(registry)
        events = []

        @agent.on_claimed
        def claimed(task_id, receipt):
            events.append(("claimed", task_id, receipt.task_id))

        @agent.on_completed
        async def completed(task_id, result, receipt):
            events.append(("completed", task_id, result))

        await agent.initialize()
        await agent.poll_once()

        assert events == [("claimed", 1, 1), ("completed", 1, "0")]

    async def test_callback_errors_are_contained(self):
        """A raising callback does not break the tick."""
        registry, _ = await make_board(tasks=1)
        agent = make_agent(registry)

        @agent.on_completed
        def completed(task_id, result, receipt):
            raise RuntimeError("callback bug")

        await agent.initialize()
        summary = await agent.poll_once()

        assert summary.completed == 1


class TestLifecycle:
    """Background timers."""

    async def test_start_is_nonblocking(self):
        """start() returns immediately and stop() shuts everything down."""
        registry, _ = await make_board()
        agent = make_agent(registry)

        agent.start()
        assert agent.running is True

        await agent.stop()
        assert agent.running is False
        assert agent._poll_task is None

    async def test_background_loop_settles_tasks(self):
        """The poll loop picks up tasks posted while running."""
        registry, requester = await make_board()
        agent = make_agent(registry, stats_interval=0.05, balance_check_interval=0.05)
        done = asyncio.Event()

        @agent.on_completed
        def completed(task_id, result, receipt):
            done.set()

        await agent.initialize()
        agent.start()
        task_id = await requester.submit(Operation.FIBONACCI, 10, reward=REWARD)

        await asyncio.wait_for(done.wait(), timeout=5.0)
        assert await requester.wait_for_result(task_id, timeout=1.0) == 55

        await agent.stop()

    async def test_stats_snapshot(self):
        """get_stats reports balances and local state."""
        registry, _ = await make_board(tasks=1)
        agent = make_agent(registry, name="stats-worker")
        await agent.initialize()
        await agent.poll_once()

        stats = await agent.get_stats()

        assert stats.name == "stats-worker"
        assert stats.earned_balance == REWARD
        assert stats.network_tasks == 1
        assert stats.active_claims == 0
        assert stats.last_processed_task_id == 1
        assert stats.next_nonce == 2
        assert stats.running is False


class TestRequester:
    """Posting tasks and waiting for results."""

    async def test_wait_for_result(self):
        """The decoded result is returned once a worker settles the task."""
        registry, requester = await make_board()
        task_id = await requester.submit(Operation.MULTIPLY, [42, 2], reward=REWARD)
        agent = make_agent(registry)
        await agent.initialize()

        waiter = asyncio.create_task(requester.wait_for_result(task_id, timeout=5.0, poll_interval=0.05))
        await agent.poll_once()

        assert await waiter == 84

    async def test_wait_for_result_times_out(self):
        """An unclaimed task times out."""
        registry, requester = await make_board()
        task_id = await requester.submit(Operation.ECHO, "x", reward=REWARD)

        with pytest.raises(TimeoutError):
            await requester.wait_for_result(task_id, timeout=0.1, poll_interval=0.02)

    async def test_submit_escrows_reward(self):
        """The requester's reward is stored on the task."""
        registry, requester = await make_board()
        task_id = await requester.submit(Operation.ECHO, "x", reward=REWARD)

        task = await registry.get_task(task_id)
        assert task.reward == REWARD
        assert task.func_type == "compute"
        assert requester.nonces.pending == {}
