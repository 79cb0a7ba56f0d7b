"""Bounded per-follower fan-out and background job tracking."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, TypeVar

from copytrader.errors import CopyTraderError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class FollowerStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FollowerResult:
    """What happened to one follower during a fan-out."""

    follower_id: str
    status: FollowerStatus
    detail: str = ""
    trade_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


def succeeded(follower_id: str, trade_id: int | None = None, detail: str = "") -> FollowerResult:
    return FollowerResult(follower_id, FollowerStatus.SUCCEEDED, detail, trade_id)


def skipped(follower_id: str, detail: str) -> FollowerResult:
    return FollowerResult(follower_id, FollowerStatus.SKIPPED, detail)


def failed(follower_id: str, detail: str) -> FollowerResult:
    return FollowerResult(follower_id, FollowerStatus.FAILED, detail)


async def fan_out(
    items: Iterable[_T],
    worker: Callable[[_T], Awaitable[FollowerResult]],
    *,
    key: Callable[[_T], str],
    concurrency: int = 10,
    label: str = "fan-out",
) -> list[FollowerResult]:
    """Run *worker* over *items* with at most *concurrency* in flight.

    A worker exception becomes a ``failed`` result for that item only; siblings
    keep running. Cancellation of the caller cancels every worker.
    """
    items = list(items)
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(item: _T) -> FollowerResult:
        async with semaphore:
            return await worker(item)

    outcomes = await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)

    results: list[FollowerResult] = []
    for item, outcome in zip(items, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            follower_id = key(item)
            if isinstance(outcome, CopyTraderError):
                logger.warning("[%s] follower %s failed: %s", label, follower_id, outcome)
            else:
                logger.error(
                    "[%s] follower %s crashed", label, follower_id, exc_info=outcome
                )
            results.append(failed(follower_id, str(outcome)))
        else:
            results.append(outcome)

    counts = {status: 0 for status in FollowerStatus}
    for result in results:
        counts[result.status] += 1
    logger.info(
        "[%s] done: %d succeeded, %d skipped, %d failed",
        label,
        counts[FollowerStatus.SUCCEEDED],
        counts[FollowerStatus.SKIPPED],
        counts[FollowerStatus.FAILED],
    )
    return results


class JobRunner:
    """Runs background jobs without blocking the request that scheduled them.

    Jobs are kept referenced until they finish, failures are logged, and
    :meth:`shutdown` cancels whatever is still running.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background job %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background job %s failed", task.get_name(), exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every job, including ones spawned meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job runner stopped (%d jobs cancelled)", len(tasks))
