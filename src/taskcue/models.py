"""Core data models for taskcue."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

UNCLAIMED = "0x0000000000000000000000000000000000000000"

# Gas limits sent with each kind of transaction
CLAIM_GAS_LIMIT = 200_000
RESULT_GAS_LIMIT = 300_000
SUBMIT_TASK_GAS_LIMIT = 500_000
WITHDRAW_GAS_LIMIT = 100_000


def same_identity(a: str, b: str) -> bool:
    """Compare two account identities, ignoring checksum casing."""
    return a.lower() == b.lower()


class TxKind(str, Enum):
    """State-changing operations an identity can submit."""

    SUBMIT_TASK = "submit_task"
    CLAIM = "claim"
    SUBMIT_RESULT = "submit_result"
    WITHDRAW = "withdraw"


class ClaimOutcome(str, Enum):
    """How a claim attempt ended."""

    CLAIMED = "claimed"
    LOST_RACE = "lost_race"
    SKIPPED = "skipped"  # Pre-check saw the task taken; nothing submitted
    EXHAUSTED = "exhausted"  # Ordering conflicts outlasted the retry ceiling
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FAILED = "failed"


@dataclass(frozen=True)
class Task:
    """Snapshot of a task as stored in the registry."""

    id: int
    requester: str
    worker: str = UNCLAIMED
    func_type: str = ""
    data: str = ""
    result: str = ""
    completed: bool = False
    reward: int = 0  # wei

    @property
    def is_claimed(self) -> bool:
        return not same_identity(self.worker, UNCLAIMED)

    def claimed_by(self, identity: str) -> bool:
        return same_identity(self.worker, identity)


@dataclass(frozen=True)
class TxParams:
    """Envelope for a state-changing registry call."""

    sender: str
    nonce: int
    gas_price: int
    gas_limit: int
    value: int = 0


@dataclass(frozen=True)
class Receipt:
    """Confirmation metadata for a mined transaction."""

    tx_hash: str
    block_number: int
    nonce: int
    gas_used: int = 0
    task_id: int | None = None
    amount: int = 0  # Withdrawn amount, for withdrawals


@dataclass
class PendingSubmission:
    """An allocated nonce whose transaction has not settled yet."""

    nonce: int
    kind: TxKind
    task_id: int | None = None
    gas_price: int = 0
    submitted_at: float = 0.0


@dataclass
class ClaimRecord:
    """A task this agent holds, pending execution or result submission."""

    task_id: int
    claimed_at: float
    tx_hash: str | None = None
    result: str | None = None  # Serialized result awaiting resubmission
    submit_attempts: int = 0


@dataclass
class WorkerStats:
    """Point-in-time observability snapshot for a worker."""

    identity: str
    name: str
    spendable_balance: int
    earned_balance: int
    network_tasks: int
    active_claims: int
    last_processed_task_id: int
    gas_price: int
    next_nonce: int | None
    running: bool


@dataclass
class TickSummary:
    """Counters for a single poll tick."""

    tasks_seen: int = 0
    claims_attempted: int = 0
    claims_won: int = 0
    claims_lost: int = 0
    completed: int = 0
    abandoned: int = 0
    resubmitted: int = 0
    high_water_mark: int = 0
    outcomes: dict[int, ClaimOutcome] = field(default_factory=dict)
