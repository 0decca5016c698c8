"""Worker agent: poll the board, win claims, execute, get paid."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from typing import Any, Callable

from taskcue.errors import (
    AlreadyClaimed,
    AlreadyCompleted,
    ExecutionError,
    InsufficientFunds,
    InvalidTaskId,
    OrderingConflict,
    RegistryError,
    TaskRejected,
)
from taskcue.executor import TaskExecutor, serialize_result
from taskcue.models import (
    CLAIM_GAS_LIMIT,
    RESULT_GAS_LIMIT,
    WITHDRAW_GAS_LIMIT,
    ClaimOutcome,
    ClaimRecord,
    Receipt,
    Task,
    TickSummary,
    TxKind,
    TxParams,
    WorkerStats,
)
from taskcue.nonce import NonceManager
from taskcue.registry import TaskRegistry

logger = logging.getLogger(__name__)

LOW_BALANCE_THRESHOLD = 10**16  # 0.01 native units


class WorkerAgent:
    """
    Long-running worker for a shared task registry.

    Every tick the agent reads the newest tasks, races other workers to claim
    unclaimed ones, executes what it wins and submits the result. The registry
    is the only authority: the agent keeps a high-water mark, the set of tasks
    it holds, and a nonce allocator, all rebuilt from the registry on restart.

    Statistics and balance checks run on their own timers and never block the
    poll loop.

    Example:
        agent = WorkerAgent(registry, address, name="worker-1")

        @agent.on_completed
        def done(task_id, result, receipt):
            logging.info(f"task {task_id} -> {result}")

        await agent.initialize()
        agent.start()
        ...
        await agent.stop()
    """

    def __init__(
        self,
        registry: TaskRegistry,
        identity: str,
        *,
        executor: TaskExecutor | None = None,
        name: str = "taskcue-worker",
        poll_interval: float = 5.0,
        window: int = 10,
        max_claims_per_tick: int = 2,
        claim_retries: int = 2,
        backoff_base: float = 2.0,
        claim_jitter: float = 2.0,
        claim_bid_step: int = 20,
        result_bid: int = 10,
        tick_timeout: float | None = None,
        stats_interval: float | None = 30.0,
        balance_check_interval: float | None = 60.0,
        low_balance_threshold: int = LOW_BALANCE_THRESHOLD,
        auto_withdraw_threshold: int | None = None,
        skip_existing: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.identity = identity
        self.executor = executor or TaskExecutor()
        self.name = name

        # Poll and claim policy
        self.poll_interval = poll_interval
        self.window = window
        self.max_claims_per_tick = max_claims_per_tick
        self.claim_retries = claim_retries
        self.backoff_base = backoff_base
        self.claim_jitter = claim_jitter
        self.claim_bid_step = claim_bid_step  # percent over base, per attempt
        self.result_bid = result_bid  # percent over base
        self.tick_timeout = tick_timeout

        # Side timers
        self.stats_interval = stats_interval
        self.balance_check_interval = balance_check_interval
        self.low_balance_threshold = low_balance_threshold
        self.auto_withdraw_threshold = auto_withdraw_threshold

        self.skip_existing = skip_existing
        self._rng = rng or random.Random()

        # Agent state, private to this process
        self.last_processed_task_id = 0
        self.claimed_tasks: dict[int, ClaimRecord] = {}
        self.nonces = NonceManager(registry, identity)
        self._abandoned: set[int] = set()
        self._in_flight: set[int] = set()

        # Lifetime counters
        self.claims_won = 0
        self.claims_lost = 0
        self.completed_count = 0
        self.abandoned_count = 0

        # Callbacks
        self._on_claimed_callback: Callable | None = None
        self._on_completed_callback: Callable | None = None
        self._on_failure_callback: Callable | None = None

        # Timers
        self._running = False
        self._initialized = False
        self._poll_task: asyncio.Task | None = None
        self._stats_task: asyncio.Task | None = None
        self._balance_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._tick_lock = asyncio.Lock()

    # --- Event Callbacks ---

    def on_claimed(self, func):
        """
        Decorator to register the claim callback.

        Called with (task_id, receipt) after this agent wins a claim.
        """
        self._on_claimed_callback = func
        return func

    def on_completed(self, func):
        """
        Decorator to register the completion callback.

        Called with (task_id, result, receipt) once the result is confirmed.
        """
        self._on_completed_callback = func
        return func

    def on_failure(self, func):
        """
        Decorator to register the failure callback.

        Called with (task_id, error) when a held task is abandoned.
        """
        self._on_failure_callback = func
        return func

    async def _emit(self, callback: Callable | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            if inspect.iscoroutinefunction(callback):
                await callback(*args)
            else:
                callback(*args)
        except Exception:
            logger.exception("[%s] Event callback %r failed", self.name, callback)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Seed the nonce and the high-water mark from the registry."""
        await self.nonces.initialize()
        if self.skip_existing:
            self.last_processed_task_id = await self.registry.task_count()
        self._initialized = True
        logger.info(
            "[%s] Initialized %s: nonce=%s, skipping tasks <= %d",
            self.name, self.identity, self.nonces.next_nonce, self.last_processed_task_id,
        )

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Start the poll loop and side timers as background asyncio tasks.

        Non-blocking. Call ``initialize()`` first; otherwise the poll loop
        initializes on its first tick.
        """
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._poll_task = asyncio.create_task(self._run_poll_loop())
        if self.stats_interval:
            self._stats_task = asyncio.create_task(self._run_stats_loop())
        if self.balance_check_interval:
            self._balance_task = asyncio.create_task(self._run_balance_loop())
        logger.info("[%s] Polling every %.1fs", self.name, self.poll_interval)

    async def stop(self, timeout: float | None = 3.0) -> None:
        """
        Stop all timers.

        Args:
            timeout: Seconds to let an in-progress tick finish before it is
                cancelled. None = wait for it.
        """
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

        for attr in ("_stats_task", "_balance_task"):
            task = getattr(self, attr)
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                setattr(self, attr, None)

        if self._poll_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._poll_task), timeout)
            except asyncio.TimeoutError:
                self._poll_task.cancel()
                try:
                    await self._poll_task
                except asyncio.CancelledError:
                    pass
            self._poll_task = None
        logger.info("[%s] Stopped", self.name)

    async def _run_poll_loop(self) -> None:
        """Tick, then sleep. Ticks never overlap."""
        while self._running:
            try:
                if not self._initialized:
                    await self.initialize()
                if self.tick_timeout is not None:
                    await asyncio.wait_for(self.poll_once(), self.tick_timeout)
                else:
                    await self.poll_once()
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                logger.warning("[%s] Tick exceeded %ss", self.name, self.tick_timeout)
            except Exception:
                logger.exception("[%s] Error during task polling", self.name)

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _run_stats_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.stats_interval)
            stats = await self.get_stats()
            if stats is not None:
                logger.info(
                    "[%s] balance=%d earned=%d network_tasks=%d active=%d last=%d gas=%d",
                    stats.name, stats.spendable_balance, stats.earned_balance,
                    stats.network_tasks, stats.active_claims,
                    stats.last_processed_task_id, stats.gas_price,
                )

    async def _run_balance_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.balance_check_interval)
            await self.check_balance()

    # --- Poll Loop ---

    async def poll_once(self) -> TickSummary:
        """
        Run one tick against the newest ``window`` tasks.

        The high-water mark only advances over the ascending run of tasks that
        are terminal for this agent; a task still worth claiming stops it so
        the next tick sees the task again.
        """
        async with self._tick_lock:
            summary = TickSummary()
            tasks = await self.registry.get_latest_tasks(self.window)
            summary.tasks_seen = len(tasks)

            fresh = [t for t in tasks if t.id > self.last_processed_task_id]
            claimable = [t for t in fresh if not t.is_claimed and not t.completed]
            jitter = len(claimable) > 1
            funds_exhausted = False
            advancing = True
            handled: set[int] = set()

            for task in fresh:
                terminal = True

                if task.completed or task.id in self._abandoned:
                    pass
                elif task.claimed_by(self.identity):
                    handled.add(task.id)
                    terminal = await self._handle_held(task, summary)
                elif task.is_claimed:
                    pass  # Someone else's
                elif funds_exhausted or summary.claims_attempted >= self.max_claims_per_tick:
                    terminal = False
                else:
                    summary.claims_attempted += 1
                    outcome = await self.claim(task.id, jitter=jitter)
                    summary.outcomes[task.id] = outcome

                    if outcome == ClaimOutcome.CLAIMED:
                        summary.claims_won += 1
                        handled.add(task.id)
                        terminal = await self._handle_held(task, summary)
                    elif outcome == ClaimOutcome.LOST_RACE:
                        summary.claims_lost += 1
                    elif outcome == ClaimOutcome.INSUFFICIENT_FUNDS:
                        funds_exhausted = True
                        terminal = False
                    elif outcome == ClaimOutcome.EXHAUSTED:
                        terminal = False

                if advancing and terminal:
                    self.last_processed_task_id = max(self.last_processed_task_id, task.id)
                else:
                    advancing = False

            # Held tasks the window no longer shows
            for task_id in sorted(set(self.claimed_tasks) - handled):
                if task_id in self._in_flight:
                    continue
                task = await self.registry.get_task(task_id)
                if task.completed or not task.claimed_by(self.identity):
                    self.claimed_tasks.pop(task_id, None)
                    continue
                await self._handle_held(task, summary)

            summary.high_water_mark = self.last_processed_task_id
            return summary

    async def _handle_held(self, task: Task, summary: TickSummary) -> bool:
        """Execute or resubmit a task this agent holds. True when done with it."""
        record = self.claimed_tasks.get(task.id)
        if record is not None and record.result is not None:
            summary.resubmitted += 1

        done = await self.execute_claimed(task)
        if task.id in self._abandoned:
            summary.abandoned += 1
        elif done:
            summary.completed += 1
        return done

    # --- Claiming ---

    async def claim(self, task_id: int, *, jitter: bool = False) -> ClaimOutcome:
        """
        Try to win ``task_id`` against other workers.

        Lost races stop immediately. Ordering conflicts resync the nonce and
        retry with a higher bid and exponential backoff, up to
        ``claim_retries`` attempts. Insufficient funds stop claiming.
        """
        if task_id in self._in_flight or task_id in self.claimed_tasks:
            return ClaimOutcome.SKIPPED

        self._in_flight.add(task_id)
        try:
            if jitter and self.claim_jitter > 0:
                # Spread out workers that poll on similar intervals
                await asyncio.sleep(self._rng.uniform(0, self.claim_jitter))

            for attempt in range(1, self.claim_retries + 1):
                task = await self.registry.get_task(task_id)
                if task.claimed_by(self.identity) and not task.completed:
                    # An earlier attempt landed after all
                    self._record_claim(task_id, None)
                    return ClaimOutcome.CLAIMED
                if task.is_claimed or task.completed:
                    logger.info("[%s] Task #%d already taken, skipping", self.name, task_id)
                    return ClaimOutcome.SKIPPED

                gas_price = await self._bid(self.claim_bid_step * attempt)
                nonce = await self.nonces.allocate_next(
                    TxKind.CLAIM, task_id=task_id, gas_price=gas_price
                )
                logger.info(
                    "[%s] Claiming task #%d (attempt %d/%d, nonce %d, gas %d)",
                    self.name, task_id, attempt, self.claim_retries, nonce, gas_price,
                )
                try:
                    receipt = await self.registry.claim_task(
                        task_id,
                        tx=TxParams(self.identity, nonce, gas_price, CLAIM_GAS_LIMIT),
                    )
                except (AlreadyClaimed, AlreadyCompleted):
                    self.claims_lost += 1
                    logger.info("[%s] Lost race for task #%d", self.name, task_id)
                    return ClaimOutcome.LOST_RACE
                except InvalidTaskId:
                    logger.warning("[%s] Task #%d does not exist", self.name, task_id)
                    return ClaimOutcome.FAILED
                except InsufficientFunds as e:
                    await self.nonces.resync()
                    logger.warning(
                        "[%s] Insufficient funds to claim task #%d, pausing claims: %s",
                        self.name, task_id, e,
                    )
                    return ClaimOutcome.INSUFFICIENT_FUNDS
                except OrderingConflict as e:
                    await self.nonces.resync()
                    if attempt < self.claim_retries:
                        delay = self.backoff_base ** attempt
                        logger.info(
                            "[%s] Claim for task #%d superseded (%s), retrying in %.1fs",
                            self.name, task_id, e, delay,
                        )
                        await asyncio.sleep(delay)
                        continue
                    logger.warning(
                        "[%s] Giving up on task #%d after %d attempts",
                        self.name, task_id, attempt,
                    )
                    return ClaimOutcome.EXHAUSTED
                except TaskRejected as e:
                    logger.warning("[%s] Claim for task #%d reverted: %s", self.name, task_id, e)
                    return ClaimOutcome.FAILED
                except RegistryError:
                    # Unknown whether the nonce was consumed
                    await self.nonces.resync()
                    raise
                finally:
                    self.nonces.settle(nonce)

                self._record_claim(task_id, receipt.tx_hash)
                logger.info(
                    "[%s] Claimed task #%d in block %d", self.name, task_id, receipt.block_number
                )
                await self._emit(self._on_claimed_callback, task_id, receipt)
                return ClaimOutcome.CLAIMED

            return ClaimOutcome.EXHAUSTED
        finally:
            self._in_flight.discard(task_id)

    def _record_claim(self, task_id: int, tx_hash: str | None) -> None:
        self.claims_won += 1
        self.claimed_tasks[task_id] = ClaimRecord(
            task_id=task_id, claimed_at=time.time(), tx_hash=tx_hash
        )

    async def _bid(self, percent_over: int) -> int:
        base = await self.registry.gas_price()
        return base * (100 + percent_over) // 100

    # --- Execution & Submission ---

    async def execute_claimed(self, task: Task) -> bool:
        """
        Execute a held task and submit its result.

        Returns True when the agent is done with the task: result confirmed,
        or execution failed and the task was abandoned. Returns False when
        submission hit a transient error; the serialized result stays cached
        and the next tick resubmits it without re-executing.
        """
        if task.id in self._in_flight:
            return False
        record = self.claimed_tasks.get(task.id)
        if record is None:
            record = ClaimRecord(task_id=task.id, claimed_at=time.time())
            self.claimed_tasks[task.id] = record

        self._in_flight.add(task.id)
        try:
            if record.result is None:
                logger.info("[%s] Executing task #%d (%s)", self.name, task.id, task.func_type)
                try:
                    value = await self.executor.execute(task.data)
                    record.result = serialize_result(value)
                except ExecutionError as e:
                    await self._abandon(task.id, e)
                    return True

            return await self._submit_result(task.id, record)
        finally:
            self._in_flight.discard(task.id)

    async def _abandon(self, task_id: int, error: Exception) -> None:
        # The claim stays on-chain; there is no way to hand it back
        logger.error("[%s] Failed to execute task #%d: %s", self.name, task_id, error)
        self.claimed_tasks.pop(task_id, None)
        self._abandoned.add(task_id)
        self.abandoned_count += 1
        await self._emit(self._on_failure_callback, task_id, error)

    async def _submit_result(self, task_id: int, record: ClaimRecord) -> bool:
        gas_price = await self._bid(self.result_bid)
        nonce = await self.nonces.allocate_next(
            TxKind.SUBMIT_RESULT, task_id=task_id, gas_price=gas_price
        )
        record.submit_attempts += 1
        logger.info("[%s] Submitting result for task #%d (nonce %d)", self.name, task_id, nonce)
        try:
            receipt = await self.registry.submit_result(
                task_id,
                record.result,
                tx=TxParams(self.identity, nonce, gas_price, RESULT_GAS_LIMIT),
            )
        except (OrderingConflict, InsufficientFunds) as e:
            await self.nonces.resync()
            logger.warning(
                "[%s] Result for task #%d not accepted (%s), will retry next round",
                self.name, task_id, e,
            )
            return False
        except AlreadyCompleted:
            logger.info("[%s] Task #%d already completed", self.name, task_id)
            self.claimed_tasks.pop(task_id, None)
            return True
        except TaskRejected as e:
            await self._abandon(task_id, e)
            return True
        except RegistryError:
            await self.nonces.resync()
            raise
        finally:
            self.nonces.settle(nonce)

        self.claimed_tasks.pop(task_id, None)
        self.completed_count += 1
        logger.info(
            "[%s] Result for task #%d confirmed in block %d",
            self.name, task_id, receipt.block_number,
        )
        await self._emit(self._on_completed_callback, task_id, record.result, receipt)
        return True

    # --- Earnings & Statistics ---

    async def withdraw_earnings(self) -> Receipt:
        """
        Withdraw the accrued balance to spendable funds.

        Raises:
            NoBalance: Nothing has accrued since the last withdrawal.
        """
        gas_price = await self._bid(0)
        nonce = await self.nonces.allocate_next(TxKind.WITHDRAW, gas_price=gas_price)
        try:
            receipt = await self.registry.withdraw_balance(
                tx=TxParams(self.identity, nonce, gas_price, WITHDRAW_GAS_LIMIT),
            )
        except TaskRejected:
            raise
        except RegistryError:
            await self.nonces.resync()
            raise
        finally:
            self.nonces.settle(nonce)
        logger.info("[%s] Withdrew %d", self.name, receipt.amount)
        return receipt

    async def get_stats(self) -> WorkerStats | None:
        """Snapshot for observability. Returns None if the registry is unreachable."""
        try:
            return WorkerStats(
                identity=self.identity,
                name=self.name,
                spendable_balance=await self.registry.get_balance(self.identity),
                earned_balance=await self.registry.balances(self.identity),
                network_tasks=await self.registry.task_count(),
                active_claims=len(self.claimed_tasks),
                last_processed_task_id=self.last_processed_task_id,
                gas_price=await self.registry.gas_price(),
                next_nonce=self.nonces.next_nonce,
                running=self._running,
            )
        except Exception as e:
            logger.warning("[%s] Could not collect stats: %s", self.name, e)
            return None

    async def check_balance(self) -> None:
        """Warn on low spendable funds; withdraw earnings past the threshold."""
        try:
            balance = await self.registry.get_balance(self.identity)
            if balance < self.low_balance_threshold:
                logger.warning(
                    "[%s] Low balance (%d). Consider adding more funds.", self.name, balance
                )
            if self.auto_withdraw_threshold is not None:
                earned = await self.registry.balances(self.identity)
                if earned >= self.auto_withdraw_threshold and earned > 0:
                    await self.withdraw_earnings()
        except Exception as e:
            logger.warning("[%s] Could not check balance: %s", self.name, e)
