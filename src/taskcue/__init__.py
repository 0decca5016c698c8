"""taskcue - Workers that race to claim, execute and settle tasks on a shared registry."""

from taskcue.agent import WorkerAgent
from taskcue.executor import Operation, TaskExecutor
from taskcue.ledger import SqliteRegistry
from taskcue.models import ClaimOutcome, Task, TickSummary, TxKind, TxParams
from taskcue.nonce import NonceManager
from taskcue.registry import TaskRegistry
from taskcue.requester import Requester

__version__ = "0.1.0"
__all__ = [
    "WorkerAgent",
    "Requester",
    "NonceManager",
    "TaskRegistry",
    "SqliteRegistry",
    "TaskExecutor",
    "Operation",
    "Task",
    "TxParams",
    "TxKind",
    "ClaimOutcome",
    "TickSummary",
]
