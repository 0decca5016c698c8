"""Built-in scenarios for taskcue-sim.

Scenarios decide how workers are funded and how the requester feeds the board.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskcue_sim.runner import SimConfig, SimulationRunner


@dataclass
class ScenarioInfo:
    """Metadata about a scenario."""
    name: str
    description: str


class Scenario(ABC):
    """Base class for simulation scenarios.

    A scenario defines:
    - How much each worker can spend on gas
    - The workload: what the requester submits, and when
    """

    @property
    @abstractmethod
    def info(self) -> ScenarioInfo:
        """Return scenario metadata."""
        ...

    def worker_funds(self, index: int, config: SimConfig) -> int:
        """Starting funds for worker ``index`` (0-based)."""
        return config.initial_funds

    @abstractmethod
    async def submit_workload(self, runner: SimulationRunner) -> None:
        """Submit the workload through the runner's requester.

        Args:
            runner: The running simulation; use ``runner.submit_one`` per task.
        """
        ...


# Import built-in scenarios
from taskcue_sim.scenarios.contention import ContentionScenario
from taskcue_sim.scenarios.steady import SteadyScenario
from taskcue_sim.scenarios.underfunded import UnderfundedScenario

# Registry of built-in scenarios
SCENARIOS: dict[str, type[Scenario]] = {
    "contention": ContentionScenario,
    "steady": SteadyScenario,
    "underfunded": UnderfundedScenario,
}


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in SCENARIOS:
        available = ", ".join(SCENARIOS.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return SCENARIOS[name]()


def list_scenarios() -> list[ScenarioInfo]:
    """List all available scenarios."""
    return [cls().info for cls in SCENARIOS.values()]
