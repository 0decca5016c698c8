"""Simulator tests: scenarios run to completion on an in-memory ledger."""

import pytest

from taskcue_sim.display import SimulationState
from taskcue_sim.runner import SimConfig, SimulationRunner, sim_identity
from taskcue_sim.scenarios import get_scenario, list_scenarios


def fast_config(**kwargs):
    options = dict(
        count=6,
        workers=2,
        poll_interval=0.05,
        claim_jitter=0.0,
        backoff_base=0.01,
        block_time=0.001,
        seed=1,
        stall_timeout=10.0,
    )
    options.update(kwargs)
    return SimConfig(**options)


class TestScenarios:
    """Scenario registry."""

    def test_list_scenarios(self):
        """All built-in scenarios are listed."""
        names = {info.name for info in list_scenarios()}
        assert names == {"contention", "steady", "underfunded"}

    def test_unknown_scenario(self):
        """Unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown scenario"):
            get_scenario("nope")

    def test_identities_are_deterministic(self):
        """Simulated identities are stable 20-byte hex strings."""
        assert sim_identity("worker-1") == sim_identity("worker-1")
        assert len(sim_identity("worker-1")) == 42


class TestRuns:
    """End-to-end simulations."""

    async def test_contention_settles_every_task(self):
        """Every task is completed exactly once across workers."""
        state = SimulationState()
        runner = SimulationRunner(fast_config(), state)

        await runner.run()

        assert state.submitted == 6
        assert state.completed == 6
        assert sum(w.completed for w in state.workers.values()) == 6
        assert state.open == 0

    async def test_error_rate_abandons(self):
        """Unsupported payloads are abandoned, the rest complete."""
        state = SimulationState()
        runner = SimulationRunner(fast_config(error_rate=1.0, count=3), state)

        await runner.run()

        assert state.abandoned == 3
        assert state.completed == 0
        assert state.progress == 1.0

    async def test_underfunded_worker_never_wins(self):
        """The starved worker claims nothing; the others take the board."""
        state = SimulationState()
        runner = SimulationRunner(fast_config(scenario="underfunded", workers=3), state)

        await runner.run()

        assert state.completed == 6
        assert state.workers["worker-1"].claims_won == 0
        assert sum(w.claims_won for w in state.workers.values()) == 6

    async def test_steady_with_gas_drift(self):
        """Paced submission under drifting gas prices still settles."""
        state = SimulationState()
        runner = SimulationRunner(fast_config(scenario="steady", submit_rate=50.0, count=5), state)

        await runner.run()

        assert state.submitted == 5
        assert state.completed == 5
        assert state.gas_price != 0
