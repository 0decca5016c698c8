"""Underfunded scenario - one worker cannot pay for gas.

The first worker starts with less than one claim's worth of gas. It should
warn, stop claiming for the tick, keep its high-water mark in place and
leave the board to the others without losing nonces.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from taskcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from taskcue_sim.runner import SimConfig, SimulationRunner

STARVED_FUNDS = 10**14  # below CLAIM_GAS_LIMIT * 1 gwei


class UnderfundedScenario(Scenario):
    """Batch submission; worker-1 is starved of gas money."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="underfunded",
            description="One worker cannot afford gas; the rest take the board",
        )

    def worker_funds(self, index: int, config: SimConfig) -> int:
        if index == 0:
            return STARVED_FUNDS
        return config.initial_funds

    async def submit_workload(self, runner: SimulationRunner) -> None:
        for i in range(runner.config.count):
            if not runner.running:
                break
            await runner.submit_one(i)
