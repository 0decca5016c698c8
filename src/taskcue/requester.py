"""Requester side: post tasks and poll for their results."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from taskcue.errors import RegistryError
from taskcue.executor import Operation
from taskcue.models import SUBMIT_TASK_GAS_LIMIT, TxKind, TxParams
from taskcue.nonce import NonceManager
from taskcue.registry import TaskRegistry

logger = logging.getLogger(__name__)


class Requester:
    """
    Posts tasks with an escrowed reward and waits for workers to finish them.

    Completion is detected by polling ``get_task``; no event subscriptions.

    Example:
        requester = Requester(registry, address)
        task_id = await requester.submit(Operation.MULTIPLY, [42, 2], reward=10**17)
        result = await requester.wait_for_result(task_id, timeout=60)
    """

    def __init__(self, registry: TaskRegistry, identity: str, *, func_type: str = "compute") -> None:
        self.registry = registry
        self.identity = identity
        self.func_type = func_type
        self.nonces = NonceManager(registry, identity)

    async def submit(
        self,
        operation: Operation | str,
        input: Any,
        *,
        reward: int = 0,
        func_type: str | None = None,
    ) -> int:
        """
        Post a task and return its id.

        Args:
            operation: Operation the worker should run.
            input: JSON-serializable operation input.
            reward: Amount escrowed and paid to the completing worker.
            func_type: Category label stored with the task.
        """
        tag = operation.value if isinstance(operation, Operation) else operation
        data = json.dumps({"operation": tag, "input": input, "timestamp": time.time()})
        gas_price = await self.registry.gas_price()
        nonce = await self.nonces.allocate_next(TxKind.SUBMIT_TASK, gas_price=gas_price)
        try:
            receipt = await self.registry.submit_task(
                func_type or self.func_type,
                data,
                tx=TxParams(self.identity, nonce, gas_price, SUBMIT_TASK_GAS_LIMIT, value=reward),
            )
        except RegistryError:
            # Revert or not, the registry's count is authoritative again
            await self.nonces.resync()
            raise
        finally:
            self.nonces.settle(nonce)

        logger.info("Submitted task #%s (%s) in block %d", receipt.task_id, tag, receipt.block_number)
        return receipt.task_id

    async def wait_for_result(
        self,
        task_id: int,
        *,
        timeout: float = 30.0,
        poll_interval: float = 2.0,
    ) -> Any:
        """
        Poll until the task completes and return its decoded result.

        Results that are not JSON are returned as the raw string.

        Raises:
            TimeoutError: The task did not complete within ``timeout`` seconds.
        """
        deadline = time.time() + timeout
        while True:
            try:
                task = await self.registry.get_task(task_id)
                if task.completed:
                    try:
                        return json.loads(task.result)
                    except ValueError:
                        return task.result
                logger.debug("Task #%d still pending", task_id)
            except RegistryError as e:
                # Keep polling until the deadline
                logger.warning("Error polling task #%d: %s", task_id, e)

            remaining = deadline - time.time()
            if remaining <= 0:
                raise TimeoutError(f"Task {task_id} timed out after {timeout}s")
            await asyncio.sleep(min(poll_interval, remaining))
