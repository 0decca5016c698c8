#!/usr/bin/env python3
"""
Mandelbrot on a Task Board

Splits a Mandelbrot render into horizontal strips, posts each strip as a
task with a reward, lets several worker agents race for them, and stitches
the results back together as ASCII art.

Demonstrates:
- Requester posting rewarded tasks to a shared ledger
- Competing workers claiming, executing and settling tasks
- Waiting for results by polling the registry
- Withdrawing earnings at the end

Usage:
    python main.py                        # 4 strips, 3 workers
    python main.py --strips 8 --workers 5
    python main.py --ledger board.db      # Persist the ledger to a file
"""

import argparse
import asyncio
import logging

import numpy as np

from taskcue import Operation, Requester, SqliteRegistry, WorkerAgent
from taskcue.errors import NoBalance
from taskcue_sim.runner import sim_identity

PALETTE = " .:-=+*#%@"
WIDTH = 72
HEIGHT = 24
MAX_ITER = 60


def strip_inputs(strips: int) -> list[dict]:
    """Divide the viewport into ``strips`` horizontal bands."""
    rows = np.array_split(np.arange(HEIGHT), strips)
    ys = np.linspace(-1.2, 1.2, HEIGHT)
    return [
        {
            "width": WIDTH,
            "height": len(band),
            "maxIterations": MAX_ITER,
            "xMin": -2.2,
            "xMax": 0.8,
            "yMin": float(ys[band[0]]),
            "yMax": float(ys[band[-1]]),
        }
        for band in rows
    ]


def render(grid: list[list[int]]) -> str:
    counts = np.asarray(grid)
    shades = (counts * (len(PALETTE) - 1)) // MAX_ITER
    return "\n".join("".join(PALETTE[s] for s in row) for row in shades)


async def main(strips: int, workers: int, ledger: str) -> None:
    registry = SqliteRegistry(ledger, block_time=0.02)

    requester_id = sim_identity("requester")
    await registry.fund(requester_id, 10**19)
    requester = Requester(registry, requester_id, func_type="render")

    agents = []
    for i in range(workers):
        identity = sim_identity(f"worker-{i + 1}")
        await registry.fund(identity, 10**18)
        agent = WorkerAgent(
            registry,
            identity,
            name=f"worker-{i + 1}",
            poll_interval=0.2,
            claim_jitter=0.2,
            stats_interval=None,
            balance_check_interval=None,
        )
        await agent.initialize()
        agent.start()
        agents.append(agent)

    print(f"Posting {strips} strips for {workers} workers...")
    task_ids = [
        await requester.submit(Operation.MANDELBROT, params, reward=10**16)
        for params in strip_inputs(strips)
    ]

    results = await asyncio.gather(
        *[requester.wait_for_result(task_id, timeout=60, poll_interval=0.2) for task_id in task_ids]
    )

    rows = [row for strip in results for row in strip]
    print(render(rows))
    print()

    for agent in agents:
        await agent.stop()
        try:
            receipt = await agent.withdraw_earnings()
            earned = receipt.amount / 10**18
        except NoBalance:
            earned = 0.0
        print(
            f"{agent.name}: won {agent.claims_won}, lost {agent.claims_lost}, "
            f"completed {agent.completed_count}, withdrew {earned:.2f}"
        )

    await registry.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Render a Mandelbrot set through a task board")
    parser.add_argument("--strips", type=int, default=4, help="Number of tasks to post (default: 4)")
    parser.add_argument("--workers", type=int, default=3, help="Competing workers (default: 3)")
    parser.add_argument("--ledger", default=":memory:", help="Ledger path (default: in-memory)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show worker logs")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main(args.strips, args.workers, args.ledger))
