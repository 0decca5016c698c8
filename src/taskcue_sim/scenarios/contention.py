"""Contention scenario - the default workload pattern.

The whole batch lands on the board at once, so every worker sees the same
claimable tasks on its next tick and races for them.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from taskcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from taskcue_sim.runner import SimulationRunner


class ContentionScenario(Scenario):
    """Batch submission, many workers, one winner per task."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="contention",
            description="Batch submission; all workers race for every task (default)",
        )

    async def submit_workload(self, runner: SimulationRunner) -> None:
        for i in range(runner.config.count):
            if not runner.running:
                break
            await runner.submit_one(i)
            if runner.config.submit_rate:
                await asyncio.sleep(1.0 / runner.config.submit_rate)
