import asyncio
import os
import time
from collections.abc import Coroutine


_KEEP_ALIVE = set()


def create_task(
    coro: Coroutine,
    *,
    name: str,
    keep_ref: bool,
    client: tuple | None = None,
) -> asyncio.Task:
    """
    Wrapper around `asyncio.create_task`.

    - Use `keep_ref` to keep an internal reference.
      This ensures that the task is not garbage collected mid-execution if no other reference is kept.
    - Use `client` to pass the client address as additional debug info on the task.
    """
    t = asyncio.create_task(coro)
    set_task_debug_info(t, name=name, client=client)
    if keep_ref and not t.done():
        # The event loop only keeps weak references to tasks.
        _KEEP_ALIVE.add(t)
        t.add_done_callback(_KEEP_ALIVE.discard)
    return t


def set_task_debug_info(
    task: asyncio.Task,
    *,
    name: str,
    client: tuple | None = None,
) -> None:
    """Set debug info for an externally-spawned task."""
    task.created = time.time()  # type: ignore
    if __debug__ is True and (test := os.environ.get("PYTEST_CURRENT_TEST", None)):
        name = f"{name} [created in {test}]"
    task.set_name(name)
    if client:
        task.client = client  # type: ignore

