"""Steady scenario - paced submission while gas prices drift.

Tasks trickle in at ``submit_rate`` (default 5/s). Between submissions the
network gas price random-walks, so bids computed a moment earlier can be
underpriced by the time they land and workers have to resync and rebid.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from taskcue_sim.scenarios import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from taskcue_sim.runner import SimulationRunner

DEFAULT_RATE = 5.0
DRIFT = 0.25  # max fractional move per step
MIN_GAS_PRICE = 100_000_000  # 0.1 gwei


class SteadyScenario(Scenario):
    """Rate-limited submission with gas-price drift."""

    @property
    def info(self) -> ScenarioInfo:
        return ScenarioInfo(
            name="steady",
            description="Paced submission while the gas price drifts",
        )

    async def submit_workload(self, runner: SimulationRunner) -> None:
        rate = runner.config.submit_rate or DEFAULT_RATE
        rng = runner.rng

        for i in range(runner.config.count):
            if not runner.running:
                break
            await runner.submit_one(i)

            price = await runner.registry.gas_price()
            moved = int(price * (1 + rng.uniform(-DRIFT, DRIFT)))
            moved = max(MIN_GAS_PRICE, moved)
            await runner.registry.set_gas_price(moved)
            runner.state.add_event("gas", "-", None, f"{price / 10**9:.2f} -> {moved / 10**9:.2f} gwei")

            await asyncio.sleep(1.0 / rate)
