from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import anyio

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from types import TracebackType

    from anyio.abc import TaskGroup

LOG = logging.getLogger("iso_gateway.background")


class BackgroundTasks:
    """Detached work that outlives the request that scheduled it.

    Tasks run in a task group owned by the host, so cancelling a request does
    not cancel them; leaving the context waits for every task to finish.
    """

    def __init__(self) -> None:
        self._task_group: TaskGroup | None = None
        self._pending = 0
        self._idle: anyio.Event | None = None

    async def __aenter__(self) -> BackgroundTasks:
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        self._idle = anyio.Event()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool | None:
        task_group, self._task_group = self._task_group, None
        assert task_group is not None
        return await task_group.__aexit__(exc_type, exc, tb)

    @property
    def pending(self) -> int:
        return self._pending

    def spawn(self, func: Callable[..., Awaitable[Any]], *args: Any, name: str) -> None:
        if self._task_group is None:
            msg = "background tasks not started"
            raise RuntimeError(msg)
        self._pending += 1
        self._task_group.start_soon(self._run, func, args, name, name=name)

    async def join(self) -> None:
        """Wait until no task is pending."""
        while self._pending:
            assert self._idle is not None
            await self._idle.wait()

    async def _run(
        self, func: Callable[..., Awaitable[Any]], args: tuple[Any, ...], name: str
    ) -> None:
        try:
            await func(*args)
        except Exception:
            LOG.warning("background task %s failed (non-fatal)", name, exc_info=True)
        finally:
            self._pending -= 1
            if not self._pending and self._idle is not None:
                idle, self._idle = self._idle, anyio.Event()
                idle.set()
