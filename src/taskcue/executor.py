"""Task payload execution.

Payloads name an operation from a closed set; there is no arbitrary code
execution. Each operation has a handler registered in ``HANDLERS`` and a time
bound that depends on its weight.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import numpy as np

from taskcue.errors import ExecutionError, ExecutionTimeout, UnsupportedOperation

logger = logging.getLogger(__name__)

LIGHT_TIMEOUT = 30.0
HEAVY_TIMEOUT = 120.0


class Operation(str, Enum):
    """Operations a worker knows how to run."""

    ECHO = "echo"
    ADD = "add"
    MULTIPLY = "multiply"
    SUM = "sum"
    MEAN = "mean"
    SORT = "sort"
    FIBONACCI = "fibonacci"
    FACTORIAL = "factorial"
    IS_PRIME = "is_prime"
    WORD_COUNT = "word_count"
    MATRIX_MULTIPLY = "matrix_multiply"
    VECTOR_SIMILARITY = "vector_similarity"
    MONTE_CARLO_PI = "monte_carlo_pi"
    MANDELBROT = "mandelbrot"

    @property
    def heavy(self) -> bool:
        return self in _HEAVY


_HEAVY = frozenset({
    Operation.MATRIX_MULTIPLY,
    Operation.VECTOR_SIMILARITY,
    Operation.MONTE_CARLO_PI,
    Operation.MANDELBROT,
})


@dataclass(frozen=True)
class TaskPayload:
    """Decoded task data."""

    operation: Operation
    input: Any


Handler = Callable[[Any], Any]

HANDLERS: dict[Operation, Handler] = {}


def handler(operation: Operation):
    """Register the handler for an operation."""
    def decorator(func: Handler) -> Handler:
        HANDLERS[operation] = func
        return func
    return decorator


def parse_payload(data: str) -> TaskPayload:
    """
    Decode a task's data field.

    Raises:
        UnsupportedOperation: Unknown operation tag, or legacy source-code payload.
        ExecutionError: Anything else malformed.
    """
    try:
        raw = json.loads(data)
    except (TypeError, ValueError) as e:
        raise ExecutionError(f"Task data is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ExecutionError("Task data must be a JSON object")
    if "func" in raw and "operation" not in raw:
        raise UnsupportedOperation("Source-code payloads are not executed")
    if "operation" not in raw:
        raise ExecutionError("Task data has no 'operation'")

    tag = raw["operation"]
    try:
        operation = Operation(tag)
    except ValueError:
        raise UnsupportedOperation(f"Unsupported operation: {tag!r}") from None

    return TaskPayload(operation=operation, input=raw.get("input"))


def serialize_result(result: Any) -> str:
    """Encode a handler result for submission to the registry."""
    try:
        return json.dumps(result, separators=(",", ":"), default=_json_default)
    except (TypeError, ValueError) as e:
        raise ExecutionError(f"Result is not serializable: {e}") from e


def _json_default(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class TaskExecutor:
    """
    Runs task payloads with a hard time bound.

    Handlers run in a worker thread so a slow kernel does not stall the event
    loop; the time bound is enforced with ``asyncio.wait_for``.

    Args:
        timeout: Override for every operation's time bound, in seconds.
        handlers: Replacement handler table (defaults to ``HANDLERS``).
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        handlers: dict[Operation, Handler] | None = None,
    ) -> None:
        self.timeout = timeout
        self.handlers = handlers if handlers is not None else HANDLERS

    def timeout_for(self, operation: Operation) -> float:
        if self.timeout is not None:
            return self.timeout
        return HEAVY_TIMEOUT if operation.heavy else LIGHT_TIMEOUT

    async def execute(self, data: str) -> Any:
        """
        Execute a task's data field and return the handler's result.

        Raises:
            ExecutionTimeout: The handler exceeded its time bound.
            UnsupportedOperation: No handler for the operation.
            ExecutionError: Malformed payload or handler failure.
        """
        payload = parse_payload(data)
        func = self.handlers.get(payload.operation)
        if func is None:
            raise UnsupportedOperation(f"No handler for operation: {payload.operation.value}")

        timeout = self.timeout_for(payload.operation)
        start = time.time()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(func, payload.input), timeout)
        except asyncio.TimeoutError:
            raise ExecutionTimeout(
                f"{payload.operation.value} timed out after {timeout:.1f}s"
            ) from None
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{payload.operation.value} failed: {e}") from e

        logger.debug("%s finished in %.3fs", payload.operation.value, time.time() - start)
        return result


# --- Handlers ---


def _numbers(value: Any) -> list[float]:
    if not isinstance(value, list) or not all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in value
    ):
        raise ExecutionError("Input must be a list of numbers")
    return value


def _non_negative_int(value: Any, limit: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ExecutionError("Input must be a non-negative integer")
    if value > limit:
        raise ExecutionError(f"Input exceeds limit of {limit}")
    return value


@handler(Operation.ECHO)
def echo(value: Any) -> Any:
    return value


@handler(Operation.ADD)
def add(value: Any) -> float:
    return sum(_numbers(value))


@handler(Operation.MULTIPLY)
def multiply(value: Any) -> float:
    return math.prod(_numbers(value))


@handler(Operation.SUM)
def total(value: Any) -> float:
    return float(np.sum(np.asarray(_numbers(value), dtype=float)))


@handler(Operation.MEAN)
def mean(value: Any) -> float:
    numbers = _numbers(value)
    if not numbers:
        raise ExecutionError("Cannot take the mean of an empty list")
    return float(np.mean(np.asarray(numbers, dtype=float)))


@handler(Operation.SORT)
def sort(value: Any) -> list:
    if not isinstance(value, list):
        raise ExecutionError("Input must be a list")
    try:
        return sorted(value)
    except TypeError as e:
        raise ExecutionError(f"Items are not comparable: {e}") from e


@handler(Operation.FIBONACCI)
def fibonacci(value: Any) -> int:
    n = _non_negative_int(value, 10_000)
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a


@handler(Operation.FACTORIAL)
def factorial(value: Any) -> int:
    return math.factorial(_non_negative_int(value, 5_000))


@handler(Operation.IS_PRIME)
def is_prime(value: Any) -> bool:
    n = _non_negative_int(value, 10**15)
    if n < 2:
        return False
    if n % 2 == 0:
        return n == 2
    for d in range(3, math.isqrt(n) + 1, 2):
        if n % d == 0:
            return False
    return True


@handler(Operation.WORD_COUNT)
def word_count(value: Any) -> dict[str, int]:
    if not isinstance(value, str):
        raise ExecutionError("Input must be a string")
    counts: dict[str, int] = {}
    for word in value.lower().split():
        word = word.strip(".,;:!?\"'()[]")
        if word:
            counts[word] = counts.get(word, 0) + 1
    return counts


@handler(Operation.MATRIX_MULTIPLY)
def matrix_multiply(value: Any) -> list[list[float]]:
    if not isinstance(value, dict) or "matrixA" not in value or "matrixB" not in value:
        raise ExecutionError("Input must be {'matrixA': [[...]], 'matrixB': [[...]]}")
    try:
        a = np.asarray(value["matrixA"], dtype=float)
        b = np.asarray(value["matrixB"], dtype=float)
    except (TypeError, ValueError) as e:
        raise ExecutionError(f"Matrices must be numeric: {e}") from e
    if a.ndim != 2 or b.ndim != 2 or a.shape[1] != b.shape[0]:
        raise ExecutionError(f"Incompatible shapes {a.shape} and {b.shape}")
    return (a @ b).tolist()


@handler(Operation.VECTOR_SIMILARITY)
def vector_similarity(value: Any) -> list[dict[str, float]]:
    """Cosine similarity of a query against a vector database, best first."""
    if not isinstance(value, dict):
        raise ExecutionError("Input must be {'queryVector': [...], 'vectorDatabase': [[...]]}")
    try:
        query = np.asarray(value["queryVector"], dtype=float)
        database = np.asarray(value["vectorDatabase"], dtype=float)
    except (KeyError, TypeError, ValueError) as e:
        raise ExecutionError(f"Malformed vectors: {e}") from e
    if database.ndim != 2 or query.ndim != 1 or database.shape[1] != query.shape[0]:
        raise ExecutionError("Query and database dimensions differ")

    top_k = int(value.get("topK", 10))
    threshold = float(value.get("threshold", 0.0))

    norms = np.linalg.norm(database, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, database @ query / norms, 0.0)

    order = np.argsort(-scores, kind="stable")[:top_k]
    return [
        {"index": int(i), "similarity": float(scores[i])}
        for i in order
        if scores[i] >= threshold
    ]


@handler(Operation.MONTE_CARLO_PI)
def monte_carlo_pi(value: Any) -> dict[str, float]:
    samples = value.get("samples") if isinstance(value, dict) else value
    samples = _non_negative_int(samples, 50_000_000)
    if samples == 0:
        raise ExecutionError("Need at least one sample")
    seed = value.get("seed") if isinstance(value, dict) else None

    rng = np.random.default_rng(seed)
    points = rng.random((samples, 2))
    hits = int(np.count_nonzero((points ** 2).sum(axis=1) <= 1.0))
    estimate = 4.0 * hits / samples
    return {
        "piEstimate": estimate,
        "samples": samples,
        "hits": hits,
        "accuracy": abs(estimate - math.pi) / math.pi,
    }


@handler(Operation.MANDELBROT)
def mandelbrot(value: Any) -> list[list[int]]:
    """Escape-iteration counts for a grid over the complex plane."""
    if not isinstance(value, dict):
        raise ExecutionError("Input must be an object with width and height")
    width = _non_negative_int(value.get("width"), 2048)
    height = _non_negative_int(value.get("height"), 2048)
    max_iter = _non_negative_int(value.get("maxIterations", 100), 10_000)
    x_min = float(value.get("xMin", -2.5))
    x_max = float(value.get("xMax", 1.5))
    y_min = float(value.get("yMin", -2.0))
    y_max = float(value.get("yMax", 2.0))

    x = np.linspace(x_min, x_max, width)
    y = np.linspace(y_min, y_max, height)
    c = x[np.newaxis, :] + 1j * y[:, np.newaxis]

    z = np.zeros_like(c)
    counts = np.zeros(c.shape, dtype=np.int32)
    mask = np.ones(c.shape, dtype=bool)

    for i in range(max_iter):
        z[mask] = z[mask] ** 2 + c[mask]
        escaped = mask & (np.abs(z) > 2)
        counts[escaped] = i
        mask &= ~escaped
        if not mask.any():
            break
    counts[mask] = max_iter

    return counts.tolist()
