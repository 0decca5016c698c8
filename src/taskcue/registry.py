"""Abstract interface to the shared task registry."""

from __future__ import annotations

from abc import ABC, abstractmethod

from taskcue.models import Receipt, Task, TxParams


class TaskRegistry(ABC):
    """
    The append-only task board every agent polls.

    Reads are snapshots. Writes take a ``TxParams`` envelope carrying the
    sender's nonce and gas bid, and resolve once the transaction is confirmed.
    Rejections surface as ``taskcue.errors.RegistryError`` subclasses.
    """

    # --- State transitions ---

    @abstractmethod
    async def submit_task(self, func_type: str, data: str, *, tx: TxParams) -> Receipt:
        """Create a task escrowing ``tx.value`` as its reward. ``Receipt.task_id`` is set."""

    @abstractmethod
    async def claim_task(self, task_id: int, *, tx: TxParams) -> Receipt:
        ...

    @abstractmethod
    async def submit_result(self, task_id: int, result: str, *, tx: TxParams) -> Receipt:
        ...

    @abstractmethod
    async def withdraw_balance(self, *, tx: TxParams) -> Receipt:
        ...

    # --- Queries ---

    @abstractmethod
    async def get_task(self, task_id: int) -> Task:
        ...

    @abstractmethod
    async def get_latest_tasks(self, count: int) -> list[Task]:
        """Up to ``count`` most recent tasks, ascending by id."""

    @abstractmethod
    async def task_count(self) -> int:
        ...

    @abstractmethod
    async def balances(self, identity: str) -> int:
        """Accrued, unwithdrawn rewards for ``identity``."""

    # --- Network ---

    @abstractmethod
    async def get_transaction_count(self, identity: str) -> int:
        """Authoritative next nonce for ``identity``."""

    @abstractmethod
    async def gas_price(self) -> int:
        """Current suggested gas price."""

    @abstractmethod
    async def get_balance(self, identity: str) -> int:
        """Spendable funds available to pay gas."""

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
