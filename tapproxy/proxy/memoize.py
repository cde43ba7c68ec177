"""
Single-flight execution of asynchronous work, keyed by string.

The first caller for a key starts the producer, every concurrent caller for
the same key awaits the same future, and later callers get the cached result.
If the producer raises, all waiters see the exception and the entry is
dropped, so the next call starts a fresh attempt.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Generic
from typing import TypeVar

from tapproxy.utils import asyncio_utils

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskState(enum.Enum):
    PENDING = "pending"
    DONE = "done"


@dataclass
class _Entry(Generic[T]):
    future: asyncio.Future[T]
    state: TaskState = TaskState.PENDING
    waiters: int = field(default=0)


class MemoizedTaskRunner:
    def __init__(self) -> None:
        self._entries: dict[str, _Entry[Any]] = {}

    def __repr__(self):
        return f"MemoizedTaskRunner({len(self._entries)} entries)"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def state(self, key: str) -> TaskState | None:
        entry = self._entries.get(key)
        return entry.state if entry else None

    async def run(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        """
        Return the result of `producer()` for `key`, executing it at most once
        while an execution is pending or after it has completed.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(asyncio.get_running_loop().create_future())
            self._entries[key] = entry
            asyncio_utils.create_task(
                self._execute(key, entry, producer),
                name=f"memoized task {key}",
                keep_ref=True,
            )
        entry.waiters += 1
        # Waiters are woken in the order they started waiting.
        # A cancelled waiter must not cancel the shared execution.
        return await asyncio.shield(entry.future)

    async def _execute(
        self, key: str, entry: _Entry[T], producer: Callable[[], Awaitable[T]]
    ) -> None:
        try:
            result = await producer()
        except asyncio.CancelledError:
            self._drop(key, entry)
            entry.future.cancel()
            raise
        except Exception as e:
            logger.debug(f"Task {key!r} failed: {e!r}")
            self._drop(key, entry)
            entry.future.set_exception(e)
            # Every waiter receives the exception, do not warn if all of them went away.
            entry.future.exception()
        else:
            entry.state = TaskState.DONE
            entry.future.set_result(result)

    def _drop(self, key: str, entry: _Entry) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]

    def remove(self, key: str) -> None:
        """
        Forget a cached result. A pending execution keeps running for its current
        waiters, but later callers start a new one.
        """
        self._entries.pop(key, None)

    def results(self) -> list[Any]:
        """All results of completed executions."""
        return [
            e.future.result() for e in self._entries.values() if e.state is TaskState.DONE
        ]
