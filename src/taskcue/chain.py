"""Task registry backed by the deployed contract, via web3.py."""

from __future__ import annotations

import logging

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from taskcue.errors import (
    ConfigError,
    RegistryError,
    RegistryUnavailable,
    TaskRejected,
    classify_registry_error,
)
from taskcue.models import Receipt, Task, TxParams, same_identity
from taskcue.registry import TaskRegistry

logger = logging.getLogger(__name__)

_TASK_COMPONENTS = [
    {"name": "id", "type": "uint256"},
    {"name": "requester", "type": "address"},
    {"name": "worker", "type": "address"},
    {"name": "funcType", "type": "string"},
    {"name": "data", "type": "string"},
    {"name": "result", "type": "string"},
    {"name": "completed", "type": "bool"},
    {"name": "reward", "type": "uint256"},
]


def _fn(name, inputs=(), outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


REGISTRY_ABI = [
    _event("NewTask", [
        {"name": "taskId", "type": "uint256", "indexed": True},
        {"name": "requester", "type": "address", "indexed": True},
        {"name": "funcType", "type": "string", "indexed": False},
        {"name": "data", "type": "string", "indexed": False},
    ]),
    _event("TaskClaimed", [
        {"name": "taskId", "type": "uint256", "indexed": True},
        {"name": "worker", "type": "address", "indexed": True},
    ]),
    _event("TaskCompleted", [
        {"name": "taskId", "type": "uint256", "indexed": True},
        {"name": "result", "type": "string", "indexed": False},
    ]),
    _fn(
        "submitTask",
        [{"name": "funcType", "type": "string"}, {"name": "data", "type": "string"}],
        mutability="payable",
    ),
    _fn("claimTask", [{"name": "taskId", "type": "uint256"}]),
    _fn(
        "submitResult",
        [{"name": "taskId", "type": "uint256"}, {"name": "result", "type": "string"}],
    ),
    _fn("withdrawBalance"),
    _fn(
        "getTask",
        [{"name": "taskId", "type": "uint256"}],
        [{"name": "", "type": "tuple", "components": _TASK_COMPONENTS}],
        "view",
    ),
    _fn(
        "getLatestTasks",
        [{"name": "count", "type": "uint256"}],
        [{"name": "", "type": "tuple[]", "components": _TASK_COMPONENTS}],
        "view",
    ),
    _fn("taskCount", outputs=[{"name": "", "type": "uint256"}], mutability="view"),
    _fn(
        "balances",
        [{"name": "account", "type": "address"}],
        [{"name": "", "type": "uint256"}],
        "view",
    ),
]


def task_from_tuple(raw) -> Task:
    """Decode the contract's Task struct."""
    task_id, requester, worker, func_type, data, result, completed, reward = raw
    return Task(
        id=int(task_id),
        requester=requester,
        worker=worker,
        func_type=func_type,
        data=data,
        result=result,
        completed=bool(completed),
        reward=int(reward),
    )


class Web3Registry(TaskRegistry):
    """
    TaskRegistry over JSON-RPC.

    Transactions are built with the caller's nonce and gas bid, signed locally
    with the configured key, and awaited until mined. Node errors and contract
    reverts are mapped onto the taskcue error taxonomy. No event filters are
    installed; everything is read by polling.

    Args:
        provider_url: JSON-RPC endpoint.
        contract_address: Deployed registry address.
        private_key: Key of the identity that signs transactions.
        chain_id: Expected chain id; fetched from the node if None.
        receipt_timeout: Seconds to wait for a transaction to be mined.
    """

    def __init__(
        self,
        provider_url: str,
        contract_address: str,
        private_key: str,
        *,
        chain_id: int | None = None,
        receipt_timeout: float = 120.0,
    ) -> None:
        self.w3 = AsyncWeb3(AsyncHTTPProvider(provider_url))
        if not AsyncWeb3.is_address(contract_address):
            raise ConfigError(f"Malformed registry address: {contract_address}")
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address), abi=REGISTRY_ABI
        )
        try:
            self.account: LocalAccount = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Malformed private key: {e}") from e
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout

    @property
    def address(self) -> str:
        return self.account.address

    async def _chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = await self._read(self.w3.eth.chain_id)
        return self.chain_id

    async def _read(self, awaitable):
        try:
            return await awaitable
        except ContractLogicError as e:
            raise classify_registry_error(str(e)) from e
        except (Web3Exception, OSError) as e:
            raise RegistryUnavailable(str(e)) from e

    async def _transact(self, fn, tx: TxParams, *, task_id: int | None = None) -> Receipt:
        mined = await self._send(fn, tx)
        return Receipt(
            tx_hash=AsyncWeb3.to_hex(mined["transactionHash"]),
            block_number=mined["blockNumber"],
            nonce=tx.nonce,
            gas_used=mined["gasUsed"],
            task_id=task_id,
        )

    async def _send(self, fn, tx: TxParams):
        """Sign, send and await one transaction. Returns the raw receipt."""
        if not same_identity(tx.sender, self.address):
            raise ConfigError(f"Cannot sign for {tx.sender}; key belongs to {self.address}")

        try:
            built = await fn.build_transaction({
                "from": self.address,
                "nonce": tx.nonce,
                "gas": tx.gas_limit,
                "gasPrice": tx.gas_price,
                "value": tx.value,
                "chainId": await self._chain_id(),
            })
            signed = self.account.sign_transaction(built)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted as e:
            raise RegistryUnavailable(f"Transaction not mined: {e}") from e
        except (Web3Exception, ValueError) as e:
            raise classify_registry_error(_explain(e)) from e
        except OSError as e:
            raise RegistryUnavailable(str(e)) from e

        if receipt["status"] == 0:
            raise await self._revert_reason(fn, receipt)
        return receipt

    async def _revert_reason(self, fn, receipt) -> RegistryError:
        """Replay a reverted call at its block to recover the reason string."""
        try:
            await fn.call({"from": self.address}, block_identifier=receipt["blockNumber"])
        except ContractLogicError as e:
            return classify_registry_error(str(e))
        except Web3Exception as e:
            logger.debug("Could not replay reverted call: %s", e)
        return TaskRejected(f"Transaction {AsyncWeb3.to_hex(receipt['transactionHash'])} reverted")

    # --- State transitions ---

    async def submit_task(self, func_type: str, data: str, *, tx: TxParams) -> Receipt:
        fn = self.contract.functions.submitTask(func_type, data)
        mined = await self._send(fn, tx)
        tx_hash = AsyncWeb3.to_hex(mined["transactionHash"])
        events = self.contract.events.NewTask().process_receipt(mined)
        if not events:
            raise RegistryError(f"No NewTask event in {tx_hash}")
        return Receipt(
            tx_hash=tx_hash,
            block_number=mined["blockNumber"],
            nonce=tx.nonce,
            gas_used=mined["gasUsed"],
            task_id=int(events[-1]["args"]["taskId"]),
        )

    async def claim_task(self, task_id: int, *, tx: TxParams) -> Receipt:
        return await self._transact(self.contract.functions.claimTask(task_id), tx, task_id=task_id)

    async def submit_result(self, task_id: int, result: str, *, tx: TxParams) -> Receipt:
        return await self._transact(
            self.contract.functions.submitResult(task_id, result), tx, task_id=task_id
        )

    async def withdraw_balance(self, *, tx: TxParams) -> Receipt:
        earned = await self.balances(self.address)
        receipt = await self._transact(self.contract.functions.withdrawBalance(), tx)
        return Receipt(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            nonce=receipt.nonce,
            gas_used=receipt.gas_used,
            amount=earned,
        )

    # --- Queries ---

    async def get_task(self, task_id: int) -> Task:
        raw = await self._read(self.contract.functions.getTask(task_id).call())
        return task_from_tuple(raw)

    async def get_latest_tasks(self, count: int) -> list[Task]:
        if count <= 0:
            return []
        raw = await self._read(self.contract.functions.getLatestTasks(count).call())
        return [task_from_tuple(item) for item in raw]

    async def task_count(self) -> int:
        return int(await self._read(self.contract.functions.taskCount().call()))

    async def balances(self, identity: str) -> int:
        address = AsyncWeb3.to_checksum_address(identity)
        return int(await self._read(self.contract.functions.balances(address).call()))

    async def get_transaction_count(self, identity: str) -> int:
        address = AsyncWeb3.to_checksum_address(identity)
        return int(await self._read(self.w3.eth.get_transaction_count(address, "pending")))

    async def gas_price(self) -> int:
        return int(await self._read(self.w3.eth.gas_price))

    async def get_balance(self, identity: str) -> int:
        address = AsyncWeb3.to_checksum_address(identity)
        return int(await self._read(self.w3.eth.get_balance(address)))

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


def _explain(error: Exception) -> str:
    """Pull the node's message out of a web3 exception."""
    if error.args and isinstance(error.args[0], dict):
        return str(error.args[0].get("message") or error)
    message = getattr(error, "message", None)
    return str(message or error)
