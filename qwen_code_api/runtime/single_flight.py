from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """One-slot coalescing of concurrent calls into a single shared task.

    Callers that arrive while a task is running await that task instead of
    starting another. The slot is emptied from inside the task before it
    settles, so a caller resumed by the result never observes a stale slot
    and the next call starts fresh.
    """

    def __init__(self) -> None:
        self._task: asyncio.Task[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._execute(factory))
            task.add_done_callback(_consume_exception)
            self._task = task
        # A cancelled waiter must not cancel the computation other callers share.
        return await asyncio.shield(task)

    async def _execute(self, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            self._task = None


def _consume_exception(task: asyncio.Task[object]) -> None:
    # Retrieve the exception so it is not reported as never retrieved when
    # every waiter was cancelled before the task failed.
    if not task.cancelled():
        task.exception()
