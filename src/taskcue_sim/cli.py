#!/usr/bin/env python3
"""
taskcue-sim: Interactive simulator for worker contention.

Usage:
    taskcue-sim --workers 4 --count 50
    taskcue-sim --scenario steady --submit-rate 3
    taskcue-sim --scenario underfunded --no-tui
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime

from rich.console import Console
from rich.table import Table

from taskcue_sim.display import WEI_PER_UNIT, SimulationState, SimulatorDisplay, print_simple_stats
from taskcue_sim.runner import SimConfig, SimulationRunner
from taskcue_sim.scenarios import SCENARIOS, list_scenarios


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the simulator."""
    # Suppress taskcue library logs during TUI mode
    taskcue_logger = logging.getLogger("taskcue")
    if verbose:
        taskcue_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        taskcue_logger.addHandler(handler)
    else:
        taskcue_logger.setLevel(logging.CRITICAL)


async def run_with_display(config: SimConfig, use_tui: bool = True, verbose: bool = False) -> None:
    """Run simulation with visual display.

    Args:
        config: Simulation configuration
        use_tui: Use Rich TUI display (default True)
        verbose: Print event log instead of status updates (implies no-tui)
    """
    state = SimulationState()

    if verbose:
        original_add_event = state.add_event
        symbols = {
            "completed": "+",
            "abandoned": "x",
            "claimed": ">",
            "lost_race": "~",
            "submitted": ".",
        }

        def logging_add_event(event_type: str, task_id: str, worker: str | None = None, details: str = "") -> None:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            symbol = symbols.get(event_type, " ")
            print(f"{ts} {symbol} {event_type:<10} {task_id:<6} {worker or '':<10} {details[:60]}")
            original_add_event(event_type, task_id, worker, details)

        state.add_event = logging_add_event  # type: ignore

    runner = SimulationRunner(config, state)

    if verbose:
        print("\ntaskcue-sim [verbose]")
        print(f"   Scenario: {config.scenario}, Workers: {config.workers}, Count: {config.count}")
        print()
        print(f"{'TIME':<12} {'':1} {'EVENT':<10} {'TASK':<6} {'WORKER':<10} DETAILS")
        print("-" * 80)
        try:
            await runner.run()
        except asyncio.CancelledError:
            runner.stop()
        finally:
            await runner.cleanup()
        print("-" * 80)

    elif use_tui:
        display = SimulatorDisplay(state)

        async def update_loop():
            while True:
                display.refresh()
                await asyncio.sleep(0.1)

        with display:
            update_task = asyncio.create_task(update_loop())
            try:
                await runner.run()
            except asyncio.CancelledError:
                runner.stop()
            finally:
                update_task.cancel()
                try:
                    await update_task
                except asyncio.CancelledError:
                    pass
                await runner.cleanup()

    else:
        print("\ntaskcue-sim")
        print(f"   Scenario: {config.scenario}, Workers: {config.workers}, Count: {config.count}")
        print()

        async def update_loop():
            while True:
                print_simple_stats(state)
                await asyncio.sleep(0.5)

        update_task = asyncio.create_task(update_loop())
        try:
            await runner.run()
        except asyncio.CancelledError:
            runner.stop()
        finally:
            update_task.cancel()
            try:
                await update_task
            except asyncio.CancelledError:
                pass
            await runner.cleanup()
        print()

    print_final_summary(state)


def print_final_summary(state: SimulationState) -> None:
    """Print final summary after simulation."""
    console = Console()
    console.print()

    table = Table(title="Simulation Results", show_header=False, border_style="green")
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Submitted", str(state.submitted))
    table.add_row("Completed", f"[green]{state.completed}[/green]")
    table.add_row("Abandoned", f"[red]{state.abandoned}[/red]" if state.abandoned else "0")
    table.add_row("Lost races", str(state.lost_races))
    table.add_row("Nonce resyncs", str(state.resyncs))
    table.add_row("Duration", f"{state.elapsed:.2f}s")
    table.add_row("Throughput", f"{state.throughput:.2f}/s")
    console.print(table)

    workers = Table(title="Workers", border_style="blue")
    workers.add_column("Worker")
    workers.add_column("Won", justify="right")
    workers.add_column("Lost", justify="right")
    workers.add_column("Done", justify="right")
    workers.add_column("Earned", justify="right")
    for w in state.workers.values():
        workers.add_row(
            w.name, str(w.claims_won), str(w.claims_lost), str(w.completed),
            f"{w.earned / WEI_PER_UNIT:.4f}",
        )
    console.print(workers)


def main():
    parser = argparse.ArgumentParser(
        description="taskcue simulator - watch workers race for tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  taskcue-sim --workers 4 --count 50
  taskcue-sim --scenario steady --submit-rate 3 --count 30
  taskcue-sim --scenario underfunded --no-tui
  taskcue-sim --error-rate 0.2 --verbose
  taskcue-sim --list-scenarios
        """,
    )

    parser.add_argument(
        "--scenario",
        type=str,
        default="contention",
        help="Scenario to run (default: contention)",
    )
    parser.add_argument(
        "--list-scenarios",
        action="store_true",
        help="List available scenarios and exit",
    )
    parser.add_argument(
        "--count", "-n",
        type=int,
        default=20,
        help="Number of tasks to submit (default: 20)",
    )
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=3,
        help="Number of competing workers (default: 3)",
    )
    parser.add_argument(
        "--reward",
        type=float,
        default=0.01,
        help="Reward per task in native units (default: 0.01)",
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=0.25,
        help="Worker poll interval in seconds (default: 0.25)",
    )
    parser.add_argument(
        "--block-time", "-b",
        type=int,
        default=10,
        help="Simulated inclusion delay per transaction in ms (default: 10)",
    )
    parser.add_argument(
        "--error-rate", "-e",
        type=float,
        default=0.0,
        help="Fraction of tasks with an unsupported operation, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--submit-rate", "-s",
        type=float,
        default=None,
        help="Submit rate (tasks/second), None = batch (default: batch)",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=None,
        help="Maximum duration in seconds (default: run until settled)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Auto-stop if nothing settles for N seconds (default: none)",
    )
    parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Disable TUI, use simple text output",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print event log instead of status updates (no-tui)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible behavior (default: random)",
    )

    args = parser.parse_args()

    if args.list_scenarios:
        print("\nAvailable scenarios:\n")
        for info in list_scenarios():
            print(f"  {info.name:<15} {info.description}")
        print()
        sys.exit(0)

    if args.scenario not in SCENARIOS:
        parser.error(f"Unknown scenario: {args.scenario}. Available: {', '.join(SCENARIOS)}")
    if args.workers < 1:
        parser.error("--workers must be at least 1")

    configure_logging(verbose=args.verbose)

    if args.seed is not None and args.verbose:
        print(f"Random seed: {args.seed}")

    config = SimConfig(
        count=args.count,
        workers=args.workers,
        scenario=args.scenario,
        reward=int(args.reward * 10**18),
        poll_interval=args.poll_interval,
        block_time=args.block_time / 1000.0,
        error_rate=args.error_rate,
        submit_rate=args.submit_rate,
        duration=args.duration,
        stall_timeout=args.timeout,
        seed=args.seed,
    )

    async def run_main():
        """Wrapper to handle signals properly."""
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        main_task = asyncio.create_task(
            run_with_display(config, use_tui=not args.no_tui, verbose=args.verbose)
        )
        stop_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            [main_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if stop_task in done:
            print("\nInterrupted.")
            sys.exit(130)

    try:
        asyncio.run(run_main())
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
