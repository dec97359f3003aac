# chatcore/orchestration/task_queue.py
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, TypeVar

log = logging.getLogger("chatcore.queue")

T = TypeVar("T")
TaskFactory = Callable[[], Awaitable[Any]]


class TaskQueue:
    """Runs async task factories one at a time, in submission order."""

    def __init__(self, name: str = "", on_idle: Optional[Callable[["TaskQueue"], None]] = None) -> None:
        self.name = name
        self._pending: Deque[Tuple[TaskFactory, asyncio.Future]] = deque()
        self._running = False
        self._runner: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._on_idle = on_idle

    @property
    def running(self) -> bool:
        return self._running

    @property
    def size(self) -> int:
        return len(self._pending)

    @property
    def is_idle(self) -> bool:
        return not self._running and not self._pending

    async def add(self, factory: Callable[[], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._pending.append((factory, fut))
        self._idle.clear()
        if not self._running:
            self._running = True
            self._runner = loop.create_task(self._run())
        return await fut

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _run(self) -> None:
        try:
            while self._pending:
                factory, fut = self._pending.popleft()
                if fut.done():
                    # caller gave up before the task started
                    continue
                try:
                    result = await factory()
                except asyncio.CancelledError:
                    fut.cancel()
                    raise
                except Exception as exc:  # noqa: BLE001
                    log.debug({"event": "queue.task_failed", "queue": self.name, "error": repr(exc)})
                    if not fut.done():
                        fut.set_exception(exc)
                else:
                    if not fut.done():
                        fut.set_result(result)
        finally:
            # runner cancelled: nothing left will ever run
            while self._pending:
                _, fut = self._pending.popleft()
                fut.cancel()
            self._running = False
            self._runner = None
            self._idle.set()
            if self._on_idle is not None:
                self._on_idle(self)


class TopicQueues:
    """One ``TaskQueue`` per conversation key, created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._queues: Dict[str, TaskQueue] = {}

    def _get(self, key: str) -> TaskQueue:
        queue = self._queues.get(key)
        if queue is None:
            queue = TaskQueue(name=key, on_idle=self._forget)
            self._queues[key] = queue
        return queue

    def _forget(self, queue: TaskQueue) -> None:
        if self._queues.get(queue.name) is queue and queue.is_idle:
            del self._queues[queue.name]

    async def enqueue(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        return await self._get(key).add(factory)

    async def idle(self, key: str) -> None:
        queue = self._queues.get(key)
        if queue is None:
            return
        await queue.wait_idle()

    def pending(self, key: str) -> int:
        queue = self._queues.get(key)
        if queue is None:
            return 0
        return queue.size + (1 if queue.running else 0)

    def __contains__(self, key: object) -> bool:
        return key in self._queues

    def __len__(self) -> int:
        return len(self._queues)
