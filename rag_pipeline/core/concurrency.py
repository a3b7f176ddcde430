"""Bounded-concurrency execution helpers.

Every in-flight call carries the key of the item it belongs to, so results are
attributed by identity rather than by position in a list.
"""

import asyncio
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    TypeVar,
)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskOutcome(Generic[R]):
    """Tagged result of one unit of work: ``{key, ok, value}`` or ``{key, ok=False, error}``."""

    key: str
    ok: bool
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error is not None else ""


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive batches of at most ``size`` items, preserving order."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    key: Callable[[T], str],
    limit: int,
) -> List[TaskOutcome[R]]:
    """Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    A failing worker never cancels its siblings; its exception is captured in the
    outcome for that item. Outcomes are returned in input order.
    """
    if limit < 1:
        raise ValueError("concurrency limit must be at least 1")

    semaphore = asyncio.Semaphore(limit)

    async def run(item: T) -> TaskOutcome[R]:
        item_key = key(item)
        async with semaphore:
            try:
                return TaskOutcome(key=item_key, ok=True, value=await worker(item))
            except Exception as e:
                return TaskOutcome(key=item_key, ok=False, error=e)

    return list(await asyncio.gather(*(run(item) for item in items)))


def outcomes_by_key(outcomes: Iterable[TaskOutcome[Any]]) -> Dict[str, TaskOutcome[Any]]:
    """Index outcomes by the key of the item that produced them."""
    return {outcome.key: outcome for outcome in outcomes}
