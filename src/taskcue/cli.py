#!/usr/bin/env python3
"""
taskcue-worker: run one worker agent against a task registry.

Usage:
    taskcue-worker              # network from deployed-contract.json or DEFAULT_NETWORK
    taskcue-worker sepolia
    taskcue-worker local        # shared SQLite ledger at TASKCUE_LEDGER_PATH

Environment:
    PRIVATE_KEY, REGISTRY_ADDRESS, PROVIDER_URL_<NETWORK>, WORKER_NAME,
    POLLING_INTERVAL (ms), AUTO_WITHDRAW_THRESHOLD, TASKCUE_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from taskcue.agent import WorkerAgent
from taskcue.config import WorkerSettings
from taskcue.errors import ConfigError

logger = logging.getLogger("taskcue.cli")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach a stream handler to the taskcue logger tree."""
    taskcue_logger = logging.getLogger("taskcue")
    taskcue_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if taskcue_logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    taskcue_logger.addHandler(handler)


async def run_worker(settings: WorkerSettings) -> None:
    """Run an agent until SIGINT or SIGTERM."""
    registry = settings.build_registry()
    agent = WorkerAgent(
        registry,
        settings.identity,
        name=settings.worker_name,
        poll_interval=settings.poll_interval,
        auto_withdraw_threshold=settings.auto_withdraw_threshold,
    )

    @agent.on_completed
    def log_completion(task_id, result, receipt):
        logger.info("Task #%d completed: %s", task_id, result[:200])

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await agent.initialize()
        stats = await agent.get_stats()
        if stats is not None:
            logger.info(
                "Worker %s on %s: balance=%d earned=%d tasks=%d",
                stats.identity, settings.network, stats.spendable_balance,
                stats.earned_balance, stats.network_tasks,
            )
        agent.start()
        await stop_event.wait()
        logger.info("Shutting down worker...")
    finally:
        await agent.stop()
        await registry.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="taskcue worker - claim and execute tasks from a shared registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "network",
        nargs="?",
        default=None,
        help="Network to join: localhost, sepolia, mumbai, monad or local",
    )
    args = parser.parse_args(argv)

    configure_logging(os.getenv("TASKCUE_LOG_LEVEL", "INFO"))

    try:
        settings = WorkerSettings.from_env(args.network)
        asyncio.run(run_worker(settings))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
