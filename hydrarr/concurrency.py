"""
Outcome-tagged fan-out helpers.

Every upstream fan-out goes through one of two helpers:

* ``settle`` runs a fixed, small set of awaitables fully in parallel.
* ``map_limit`` runs a data-dependent number of calls with at most ``limit``
  in flight.

Both return one ``Outcome`` per input, in input order. A failing item never
aborts the batch; only caller bugs (e.g. a non-integer limit) raise.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")

FULFILLED = "fulfilled"
REJECTED = "rejected"


@dataclass
class Outcome:
    """Result of one item of a fan-out."""
    status: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == FULFILLED

    @classmethod
    def fulfilled(cls, value: Any) -> "Outcome":
        return cls(status=FULFILLED, value=value)

    @classmethod
    def rejected(cls, error: BaseException) -> "Outcome":
        return cls(status=REJECTED, error=error)

    def unwrap(self) -> Any:
        """Return the value, or re-raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value

    def value_or(self, default: Any) -> Any:
        return self.value if self.ok else default


async def settle(*awaitables: Awaitable[Any]) -> List[Outcome]:
    """Await all awaitables concurrently and tag each result."""
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    outcomes = []
    for result in results:
        if isinstance(result, Exception):
            outcomes.append(Outcome.rejected(result))
        elif isinstance(result, BaseException):
            raise result
        else:
            outcomes.append(Outcome.fulfilled(result))
    return outcomes


async def map_limit(
    items: Iterable[T],
    limit: int,
    mapper: Callable[[T], Awaitable[Any]],
) -> List[Outcome]:
    """
    Map ``mapper`` over ``items`` with bounded concurrency.

    Args:
        items: Inputs to map
        limit: Maximum number of mapper calls in flight, clamped to [1, len(items)]
        mapper: Async callable applied to each item

    Returns:
        One Outcome per item; the i-th outcome belongs to items[i]

    Raises:
        ValueError: if limit is not an integer
    """
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValueError(f"limit must be an integer, got {limit!r}")

    pending: Sequence[T] = list(items)
    if not pending:
        return []

    workers = max(1, min(limit, len(pending)))
    outcomes: List[Optional[Outcome]] = [None] * len(pending)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(pending):
            index = next_index
            next_index += 1
            try:
                value = await mapper(pending[index])
                outcomes[index] = Outcome.fulfilled(value)
            except Exception as e:
                outcomes[index] = Outcome.rejected(e)

    await asyncio.gather(*(worker() for _ in range(workers)))
    return outcomes
