"""Simulation runner for taskcue-sim.

This module handles the actual simulation logic, decoupled from display.
It updates a SimulationState object that can be rendered by any display.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from taskcue import Operation, Requester, SqliteRegistry, TaskExecutor, WorkerAgent
from taskcue_sim.display import WorkerStatus
from taskcue_sim.scenarios import Scenario, get_scenario

if TYPE_CHECKING:
    from taskcue_sim.display import SimulationState

logger = logging.getLogger(__name__)


@dataclass
class SimConfig:
    """Configuration for a simulation run."""

    count: int = 20
    workers: int = 3
    scenario: str = "contention"
    reward: int = 10**16  # 0.01 per task
    initial_funds: int = 10**18
    requester_funds: int = 10**20
    poll_interval: float = 0.25
    window: int = 10
    max_claims_per_tick: int = 2
    claim_jitter: float = 0.1
    backoff_base: float = 1.2
    block_time: float = 0.01  # seconds per transaction
    error_rate: float = 0.0  # fraction of tasks with an unsupported operation
    submit_rate: float | None = None  # tasks/second, None = batch
    duration: float | None = None
    stall_timeout: float | None = None
    db_path: str = ":memory:"
    seed: int | None = None


def _payload(rng: random.Random) -> tuple[str, Any]:
    """A small random workload for one task."""
    choice = rng.randrange(6)
    if choice == 0:
        return Operation.MULTIPLY.value, [rng.randint(1, 100), rng.randint(1, 100)]
    if choice == 1:
        return Operation.FIBONACCI.value, rng.randint(10, 200)
    if choice == 2:
        return Operation.IS_PRIME.value, rng.randint(2, 10**6)
    if choice == 3:
        return Operation.SORT.value, [rng.randint(0, 100) for _ in range(8)]
    if choice == 4:
        return Operation.WORD_COUNT.value, "the quick brown fox jumps over the lazy dog the end"
    return Operation.MONTE_CARLO_PI.value, {"samples": 20_000, "seed": rng.randint(0, 2**31)}


def sim_identity(label: str) -> str:
    """Deterministic 20-byte hex identity for a simulated participant."""
    return "0x" + hashlib.sha256(label.encode()).hexdigest()[:40]


class SimulationRunner:
    """Runs simulations and updates state for display.

    N worker agents and one requester share a single ledger. The runner
    funds them, starts the agents, lets the scenario feed the board, and
    polls the ledger to keep the display state current.

    Usage:
        config = SimConfig(count=50, workers=4)
        state = SimulationState()
        runner = SimulationRunner(config, state)

        # In your event loop:
        await runner.run()
    """

    def __init__(
        self,
        config: SimConfig,
        state: SimulationState,
        on_event: Callable[[str, str, str | None, str], None] | None = None,
    ):
        self.config = config
        self.state = state
        self.on_event = on_event or state.add_event
        self.rng = random.Random(config.seed)

        self.scenario: Scenario = get_scenario(config.scenario)
        self.registry: SqliteRegistry | None = None
        self.requester: Requester | None = None
        self.agents: list[WorkerAgent] = []

        self._running = False
        self._submitting = False
        self._lost_seen: dict[str, int] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Run the simulation to completion."""
        self._running = True
        self.state.start_time = time.time()
        self.state.target_count = self.config.count
        self.state.reward = self.config.reward
        self.state.error_rate = self.config.error_rate
        self.state.scenario_name = self.scenario.info.name

        self.registry = SqliteRegistry(self.config.db_path, block_time=self.config.block_time)

        requester_id = sim_identity("requester")
        await self.registry.fund(requester_id, self.config.requester_funds)
        self.requester = Requester(self.registry, requester_id, func_type="sim")

        executor = TaskExecutor(timeout=10.0)
        for index in range(self.config.workers):
            agent = await self._create_agent(index, executor)
            self.agents.append(agent)

        for agent in self.agents:
            await agent.initialize()
            agent.start()

        self._submitting = True
        monitor = asyncio.create_task(self._monitor())
        try:
            await self.scenario.submit_workload(self)
        finally:
            self._submitting = False

        await monitor
        await self.cleanup()

    async def _create_agent(self, index: int, executor: TaskExecutor) -> WorkerAgent:
        name = f"worker-{index + 1}"
        identity = sim_identity(name)
        await self.registry.fund(identity, self.scenario.worker_funds(index, self.config))

        agent_rng = random.Random(self.config.seed + index) if self.config.seed is not None else None
        agent = WorkerAgent(
            self.registry,
            identity,
            executor=executor,
            name=name,
            poll_interval=self.config.poll_interval,
            window=self.config.window,
            max_claims_per_tick=self.config.max_claims_per_tick,
            claim_jitter=self.config.claim_jitter,
            backoff_base=self.config.backoff_base,
            stats_interval=None,
            balance_check_interval=None,
            rng=agent_rng,
        )
        self.state.workers[name] = WorkerStatus(name=name, identity=identity)
        self._lost_seen[name] = 0

        @agent.on_claimed
        def on_claimed(task_id, receipt):
            self.state.block_number = max(self.state.block_number, receipt.block_number)
            self.on_event("claimed", f"#{task_id}", name, f"block {receipt.block_number}")

        @agent.on_completed
        def on_completed(task_id, result, receipt):
            self.state.block_number = max(self.state.block_number, receipt.block_number)
            self.on_event("completed", f"#{task_id}", name, result)

        @agent.on_failure
        def on_failure(task_id, error):
            self.on_event("abandoned", f"#{task_id}", name, str(error))

        return agent

    async def submit_one(self, index: int) -> int:
        """Submit one task through the requester."""
        if self.rng.random() < self.config.error_rate:
            operation, value = "unsupported_op", index
        else:
            operation, value = _payload(self.rng)

        task_id = await self.requester.submit(operation, value, reward=self.config.reward)
        self.state.submitted += 1
        self.on_event("submitted", f"#{task_id}", None, operation)
        return task_id

    async def _monitor(self) -> None:
        """Poll the ledger until every submitted task is settled."""
        last_settled = -1
        stalled_since = time.time()

        while self._running:
            await self._update_state()

            settled = self.state.completed + self.state.abandoned
            if not self._submitting and settled >= self.state.submitted:
                break

            if settled != last_settled:
                last_settled = settled
                stalled_since = time.time()
            elif self.config.stall_timeout and time.time() - stalled_since >= self.config.stall_timeout:
                self.on_event("timeout", "-", None, f"Stalled for {self.config.stall_timeout}s")
                break

            if self.config.duration and self._elapsed >= self.config.duration:
                break

            await asyncio.sleep(0.1)

        await self._update_state()

    async def _update_state(self) -> None:
        """Refresh board and worker stats from the ledger."""
        if self.registry is None:
            return

        self.state.elapsed = self._elapsed

        count = await self.registry.task_count()
        tasks = await self.registry.get_latest_tasks(count)
        self.state.open = sum(1 for t in tasks if not t.is_claimed and not t.completed)
        self.state.claimed = sum(1 for t in tasks if t.is_claimed and not t.completed)
        self.state.completed = sum(1 for t in tasks if t.completed)
        self.state.gas_price = await self.registry.gas_price()
        self.state.block_number = await self.registry.block_number()

        abandoned = lost = resyncs = 0
        for agent in self.agents:
            status = self.state.workers[agent.name]
            status.claims_won = agent.claims_won
            status.claims_lost = agent.claims_lost
            status.completed = agent.completed_count
            status.abandoned = agent.abandoned_count
            status.active = len(agent.claimed_tasks)
            status.next_nonce = agent.nonces.next_nonce
            status.resyncs = agent.nonces.resync_count
            status.high_water_mark = agent.last_processed_task_id
            status.earned = await self.registry.balances(agent.identity)
            status.funds = await self.registry.get_balance(agent.identity)

            new_losses = agent.claims_lost - self._lost_seen[agent.name]
            if new_losses > 0:
                self._lost_seen[agent.name] = agent.claims_lost
                self.on_event("lost_race", "-", agent.name, f"{new_losses} lost")

            abandoned += agent.abandoned_count
            lost += agent.claims_lost
            resyncs += agent.nonces.resync_count

        self.state.abandoned = abandoned
        self.state.lost_races = lost
        self.state.resyncs = resyncs

    @property
    def _elapsed(self) -> float:
        """Elapsed time since start."""
        return time.time() - self.state.start_time

    def stop(self) -> None:
        """Request simulation stop."""
        self._running = False

    async def cleanup(self) -> None:
        """Clean up resources. Call after interrupt or completion."""
        self._running = False
        for agent in self.agents:
            try:
                await agent.stop(timeout=1.0)
            except Exception:
                logger.exception("Error stopping %s", agent.name)
        self.agents = []
        if self.registry is not None:
            await self.registry.close()
            self.registry = None
