"""Settle-all concurrency: run awaitables together and keep every outcome."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Iterable, List, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """A task that completed."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """A task that raised."""

    error: Exception

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


async def gather_settled(awaitables: Iterable[Awaitable[T]]) -> List[Result]:
    """
    Await all awaitables concurrently and return one Result per input, in order.

    Unlike a plain ``asyncio.gather``, one failure neither cancels the
    siblings nor hides their outcomes. Cancellation of the caller still
    propagates.
    """
    outcomes: List[Any] = await asyncio.gather(*awaitables, return_exceptions=True)

    results: List[Result] = []
    for outcome in outcomes:
        if isinstance(outcome, Exception):
            results.append(Err(outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append(Ok(outcome))
    return results
