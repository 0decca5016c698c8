"""SQLite-backed task registry.

A complete ``TaskRegistry`` that behaves like the deployed contract running on
an EVM node: per-sender nonces, gas fees, reverts that still consume the
nonce. Several worker processes can race against one ledger file.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Awaitable, Callable

import aiosqlite

from taskcue.errors import (
    AlreadyClaimed,
    AlreadyCompleted,
    InsufficientFunds,
    InvalidTaskId,
    NoBalance,
    NotAssignedWorker,
    StaleNonce,
    TaskRejected,
    Underpriced,
)
from taskcue.models import UNCLAIMED, Receipt, Task, TxKind, TxParams, same_identity
from taskcue.registry import TaskRegistry

SCHEMA_VERSION = 1

DEFAULT_GAS_PRICE = 1_000_000_000  # 1 gwei

# Gas actually burned per operation, reverted or not
GAS_USED = {
    TxKind.SUBMIT_TASK: 150_000,
    TxKind.CLAIM: 60_000,
    TxKind.SUBMIT_RESULT: 90_000,
    TxKind.WITHDRAW: 35_000,
}

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Single-row chain head
CREATE TABLE IF NOT EXISTS chain (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    block_number INTEGER NOT NULL,
    gas_price INTEGER NOT NULL
);

-- Accounts: nonce, spendable funds, accrued rewards
CREATE TABLE IF NOT EXISTS accounts (
    identity TEXT PRIMARY KEY,  -- lowercased
    nonce INTEGER NOT NULL DEFAULT 0,
    funds INTEGER NOT NULL DEFAULT 0,
    earned INTEGER NOT NULL DEFAULT 0
);

-- Tasks: dense ids from 1
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY,
    requester TEXT NOT NULL,
    worker TEXT NOT NULL,
    func_type TEXT NOT NULL,
    data TEXT NOT NULL,
    result TEXT NOT NULL DEFAULT '',
    completed INTEGER NOT NULL DEFAULT 0,
    reward INTEGER NOT NULL,
    created_at REAL NOT NULL
);

-- Mined transactions, including reverted ones
CREATE TABLE IF NOT EXISTS transactions (
    hash TEXT PRIMARY KEY,
    sender TEXT NOT NULL,
    nonce INTEGER NOT NULL,
    kind TEXT NOT NULL,
    task_id INTEGER,
    gas_price INTEGER NOT NULL,
    gas_used INTEGER NOT NULL,
    status INTEGER NOT NULL,
    error TEXT,
    block_number INTEGER NOT NULL,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transactions_sender ON transactions(sender, nonce);
"""


async def init_db(db_path: str, gas_price: int = DEFAULT_GAS_PRICE) -> aiosqlite.Connection:
    """
    Open the ledger and create the schema if needed.

    Args:
        db_path: Path to SQLite file or ":memory:" for in-memory.
        gas_price: Initial network gas price for a fresh ledger.

    Returns:
        Open connection in autocommit mode; transactions are explicit.
    """
    conn = await aiosqlite.connect(db_path, isolation_level=None)
    conn.row_factory = aiosqlite.Row

    # WAL lets readers in other processes proceed during a write
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Statements are idempotent; the write lock keeps concurrent
    # processes from interleaving schema creation.
    await conn.execute("BEGIN IMMEDIATE")
    try:
        for statement in _split_statements(SCHEMA):
            await conn.execute(statement)
        await conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        await conn.execute(
            "INSERT OR IGNORE INTO chain (id, block_number, gas_price) VALUES (1, 0, ?)",
            (gas_price,),
        )
        await conn.execute("COMMIT")
    except BaseException:
        await conn.execute("ROLLBACK")
        await conn.close()
        raise

    return conn


def _split_statements(script: str) -> list[str]:
    """Split the schema into single statements, dropping comments."""
    lines = [line for line in script.splitlines() if not line.strip().startswith("--")]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        requester=row["requester"],
        worker=row["worker"],
        func_type=row["func_type"],
        data=row["data"],
        result=row["result"],
        completed=bool(row["completed"]),
        reward=row["reward"],
    )


def _tx_hash(tx: TxParams) -> str:
    digest = hashlib.sha256(f"{tx.sender.lower()}:{tx.nonce}".encode()).hexdigest()
    return "0x" + digest


class SqliteRegistry(TaskRegistry):
    """
    Task registry on a local SQLite ledger.

    Example:
        registry = SqliteRegistry(":memory:")
        await registry.fund(worker, 10**18)
        receipt = await registry.claim_task(1, tx=TxParams(worker, 0, gas_price, 200_000))
        await registry.close()

    Args:
        db_path: SQLite file shared by every process on the board, or ":memory:".
        block_time: Seconds each transaction waits before inclusion, to let
            competing submissions interleave.
        gas_price: Initial gas price for a fresh ledger.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        block_time: float = 0.0,
        gas_price: int = DEFAULT_GAS_PRICE,
    ) -> None:
        self.db_path = db_path
        self.block_time = block_time
        self._initial_gas_price = gas_price
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            async with self._init_lock:
                if self._conn is None:
                    self._conn = await init_db(self.db_path, self._initial_gas_price)
        return self._conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # --- Transactions ---

    async def _transact(
        self,
        kind: TxKind,
        tx: TxParams,
        apply: Callable[[aiosqlite.Connection], Awaitable[dict]],
        *,
        task_id: int | None = None,
    ) -> Receipt:
        """
        Admit, execute and record one transaction.

        Admission failures (bad nonce, low price, no funds) leave the ledger
        untouched. Once admitted, the nonce and fee are committed even if
        ``apply`` reverts; the revert is re-raised after commit.
        """
        if self.block_time > 0:
            await asyncio.sleep(self.block_time)

        conn = await self._get_conn()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                account = await self._load_account(conn, tx.sender)
                gas_price = await self._chain_gas_price(conn)
                self._admit(account, tx, gas_price)

                block_number = await self._next_block(conn)
                gas_used = min(GAS_USED[kind], tx.gas_limit)
                fee = gas_used * tx.gas_price

                rejection: TaskRejected | None = None
                outcome: dict = {}
                try:
                    outcome = await apply(conn)
                except TaskRejected as e:
                    rejection = e

                value = tx.value if rejection is None else 0
                await conn.execute(
                    "UPDATE accounts SET nonce = nonce + 1, funds = funds - ? WHERE identity = ?",
                    (fee + value, tx.sender.lower()),
                )
                tx_hash = _tx_hash(tx)
                await conn.execute(
                    """
                    INSERT INTO transactions (
                        hash, sender, nonce, kind, task_id, gas_price, gas_used,
                        status, error, block_number, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tx_hash,
                        tx.sender.lower(),
                        tx.nonce,
                        kind.value,
                        outcome.get("task_id", task_id),
                        tx.gas_price,
                        gas_used,
                        0 if rejection else 1,
                        str(rejection) if rejection else None,
                        block_number,
                        time.time(),
                    ),
                )
                await conn.execute("COMMIT")
            except BaseException:
                await conn.execute("ROLLBACK")
                raise

        if rejection is not None:
            raise rejection

        return Receipt(
            tx_hash=tx_hash,
            block_number=block_number,
            nonce=tx.nonce,
            gas_used=gas_used,
            task_id=outcome.get("task_id", task_id),
            amount=outcome.get("amount", 0),
        )

    @staticmethod
    def _admit(account: dict, tx: TxParams, gas_price: int) -> None:
        expected = account["nonce"]
        if tx.nonce < expected:
            raise StaleNonce(f"nonce too low: next nonce {expected}, tx nonce {tx.nonce}")
        if tx.nonce > expected:
            raise StaleNonce(f"nonce too high: next nonce {expected}, tx nonce {tx.nonce}")
        if tx.gas_price < gas_price:
            raise Underpriced(
                f"transaction underpriced: gas price {tx.gas_price} < network {gas_price}"
            )
        cost = tx.gas_limit * tx.gas_price + tx.value
        if account["funds"] < cost:
            raise InsufficientFunds(
                f"insufficient funds for gas * price + value: have {account['funds']} want {cost}"
            )

    async def _load_account(self, conn: aiosqlite.Connection, identity: str) -> dict:
        await conn.execute(
            "INSERT OR IGNORE INTO accounts (identity) VALUES (?)", (identity.lower(),)
        )
        async with conn.execute(
            "SELECT * FROM accounts WHERE identity = ?", (identity.lower(),)
        ) as cursor:
            row = await cursor.fetchone()
            return dict(row)

    async def _chain_gas_price(self, conn: aiosqlite.Connection) -> int:
        async with conn.execute("SELECT gas_price FROM chain WHERE id = 1") as cursor:
            row = await cursor.fetchone()
            return row["gas_price"]

    async def _next_block(self, conn: aiosqlite.Connection) -> int:
        await conn.execute("UPDATE chain SET block_number = block_number + 1 WHERE id = 1")
        async with conn.execute("SELECT block_number FROM chain WHERE id = 1") as cursor:
            row = await cursor.fetchone()
            return row["block_number"]

    async def _fetch_task(self, conn: aiosqlite.Connection, task_id: int) -> Task:
        async with conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise InvalidTaskId()
        return _row_to_task(row)

    # --- State transitions ---

    async def submit_task(self, func_type: str, data: str, *, tx: TxParams) -> Receipt:
        async def apply(conn: aiosqlite.Connection) -> dict:
            async with conn.execute("SELECT COUNT(*) AS n FROM tasks") as cursor:
                task_id = (await cursor.fetchone())["n"] + 1
            await conn.execute(
                """
                INSERT INTO tasks (id, requester, worker, func_type, data, reward, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (task_id, tx.sender, UNCLAIMED, func_type, data, tx.value, time.time()),
            )
            return {"task_id": task_id}

        return await self._transact(TxKind.SUBMIT_TASK, tx, apply)

    async def claim_task(self, task_id: int, *, tx: TxParams) -> Receipt:
        async def apply(conn: aiosqlite.Connection) -> dict:
            task = await self._fetch_task(conn, task_id)
            if task.is_claimed:
                raise AlreadyClaimed()
            if task.completed:
                raise AlreadyCompleted()
            await conn.execute("UPDATE tasks SET worker = ? WHERE id = ?", (tx.sender, task_id))
            return {"task_id": task_id}

        return await self._transact(TxKind.CLAIM, tx, apply, task_id=task_id)

    async def submit_result(self, task_id: int, result: str, *, tx: TxParams) -> Receipt:
        async def apply(conn: aiosqlite.Connection) -> dict:
            task = await self._fetch_task(conn, task_id)
            if not same_identity(task.worker, tx.sender):
                raise NotAssignedWorker()
            if task.completed:
                raise AlreadyCompleted()
            # Completion and reward credit commit together
            await conn.execute(
                "UPDATE tasks SET result = ?, completed = 1 WHERE id = ?", (result, task_id)
            )
            await conn.execute(
                "UPDATE accounts SET earned = earned + ? WHERE identity = ?",
                (task.reward, tx.sender.lower()),
            )
            return {"task_id": task_id, "amount": task.reward}

        return await self._transact(TxKind.SUBMIT_RESULT, tx, apply, task_id=task_id)

    async def withdraw_balance(self, *, tx: TxParams) -> Receipt:
        async def apply(conn: aiosqlite.Connection) -> dict:
            async with conn.execute(
                "SELECT earned FROM accounts WHERE identity = ?", (tx.sender.lower(),)
            ) as cursor:
                earned = (await cursor.fetchone())["earned"]
            if earned <= 0:
                raise NoBalance()
            await conn.execute(
                "UPDATE accounts SET earned = 0, funds = funds + ? WHERE identity = ?",
                (earned, tx.sender.lower()),
            )
            return {"amount": earned}

        return await self._transact(TxKind.WITHDRAW, tx, apply)

    # --- Queries ---

    async def get_task(self, task_id: int) -> Task:
        conn = await self._get_conn()
        async with self._lock:
            return await self._fetch_task(conn, task_id)

    async def get_latest_tasks(self, count: int) -> list[Task]:
        if count <= 0:
            return []
        conn = await self._get_conn()
        async with self._lock:
            async with conn.execute("SELECT COUNT(*) AS n FROM tasks") as cursor:
                total = (await cursor.fetchone())["n"]
            start = max(1, total - count + 1)
            async with conn.execute(
                "SELECT * FROM tasks WHERE id >= ? ORDER BY id ASC", (start,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_task(row) for row in rows]

    async def task_count(self) -> int:
        conn = await self._get_conn()
        async with self._lock:
            async with conn.execute("SELECT COUNT(*) AS n FROM tasks") as cursor:
                return (await cursor.fetchone())["n"]

    async def balances(self, identity: str) -> int:
        return (await self._account_snapshot(identity))["earned"]

    async def get_transaction_count(self, identity: str) -> int:
        return (await self._account_snapshot(identity))["nonce"]

    async def get_balance(self, identity: str) -> int:
        return (await self._account_snapshot(identity))["funds"]

    async def gas_price(self) -> int:
        conn = await self._get_conn()
        async with self._lock:
            return await self._chain_gas_price(conn)

    async def _account_snapshot(self, identity: str) -> dict:
        conn = await self._get_conn()
        async with self._lock:
            async with conn.execute(
                "SELECT * FROM accounts WHERE identity = ?", (identity.lower(),)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return {"identity": identity.lower(), "nonce": 0, "funds": 0, "earned": 0}
        return dict(row)

    # --- Ledger administration ---

    async def fund(self, identity: str, amount: int) -> int:
        """Credit spendable funds to ``identity``. Returns the new balance."""
        conn = await self._get_conn()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                await self._load_account(conn, identity)
                await conn.execute(
                    "UPDATE accounts SET funds = funds + ? WHERE identity = ?",
                    (amount, identity.lower()),
                )
                async with conn.execute(
                    "SELECT funds FROM accounts WHERE identity = ?", (identity.lower(),)
                ) as cursor:
                    funds = (await cursor.fetchone())["funds"]
                await conn.execute("COMMIT")
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
        return funds

    async def set_gas_price(self, price: int) -> None:
        """Move the network gas price, e.g. to simulate congestion."""
        conn = await self._get_conn()
        async with self._lock:
            await conn.execute("UPDATE chain SET gas_price = ? WHERE id = 1", (price,))

    async def block_number(self) -> int:
        conn = await self._get_conn()
        async with self._lock:
            async with conn.execute("SELECT block_number FROM chain WHERE id = 1") as cursor:
                return (await cursor.fetchone())["block_number"]

    async def transactions(self, identity: str | None = None, limit: int = 100) -> list[dict]:
        """List mined transactions, newest first."""
        query = "SELECT * FROM transactions WHERE 1=1"
        params: list = []

        if identity:
            query += " AND sender = ?"
            params.append(identity.lower())

        query += " ORDER BY block_number DESC LIMIT ?"
        params.append(limit)

        conn = await self._get_conn()
        async with self._lock:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]
