"""
Asyncio front-end for sessions.

Session statements can block on locks, so each AsyncSession owns one worker
thread that runs its statements in order. Coroutines submit a task and await
its Future; the event loop keeps running other sessions while one waits for
a lock.
"""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from queue import Queue
from typing import Any, Callable, TypeVar

from .enums import IsolationLevel
from .exceptions import SessionClosedError
from .predicates import Key, Predicate
from .session import Session
from .transactions import Transaction

T = TypeVar("T")


@dataclass
class Task:
    """A statement to be executed by the worker."""

    func: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    future: Future[Any]


class SessionWorker:
    """
    Single thread executing one session's statements in submission order.

    Uses a blocking Queue.get() so an idle worker costs nothing.
    """

    def __init__(self, name: str) -> None:
        self._queue: Queue[Task | None] = Queue()
        self._closed = False
        self._thread = threading.Thread(
            target=self._loop,
            name=f"isokv-{name}",
            daemon=True,
        )
        self._thread.start()

    def _loop(self) -> None:
        while True:
            # Blocks until task available - no polling!
            task = self._queue.get()
            if task is None:  # Shutdown sentinel
                break
            self._execute_task(task)

    def _execute_task(self, task: Task) -> None:
        """Execute a task and set its result or exception."""
        if not task.future.set_running_or_notify_cancel():
            return

        try:
            result = task.func(*task.args, **task.kwargs)
            task.future.set_result(result)
        except Exception as e:
            task.future.set_exception(e)

    def submit(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        """Queue ``func(*args, **kwargs)`` and return its Future."""
        if self._closed:
            raise SessionClosedError("Session worker is closed")

        future: Future[T] = Future()
        self._queue.put(Task(func=func, args=args, kwargs=kwargs, future=future))
        return future

    def close(self, wait: bool = True) -> None:
        """Stop the worker after the queued tasks have run."""
        if self._closed:
            return

        self._closed = True
        self._queue.put(None)

        if wait:
            self._thread.join(timeout=5.0)

    @property
    def closed(self) -> bool:
        return self._closed


class AsyncSession:
    """
    Async wrapper around a Session.

    Usage:
        async with engine.open_async(IsolationLevel.READ_COMMITTED, autocommit=False) as s1:
            balance = await s1.read(("account", 1))
            await s1.write(("account", 1), {"balance": balance["balance"] - 250})
            await s1.commit()
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._worker = SessionWorker(session.name)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        future = self._worker.submit(func, *args)
        return await asyncio.wrap_future(future)

    async def read(self, key: Key) -> Any | None:
        return await self._run(self._session.read, key)

    async def scan(self, predicate: Predicate) -> list[tuple[Key, Any]]:
        return await self._run(self._session.scan, predicate)

    async def write(self, key: Key, value: Any) -> None:
        await self._run(self._session.write, key, value)

    async def insert(self, key: Key, value: Any) -> None:
        await self._run(self._session.insert, key, value)

    async def update(self, key: Key, func: Callable[[Any], Any]) -> Any:
        return await self._run(self._session.update, key, func)

    async def delete(self, key: Key) -> None:
        await self._run(self._session.delete, key)

    async def commit(self) -> None:
        await self._run(self._session.commit)

    async def rollback(self) -> None:
        await self._run(self._session.rollback)

    async def close(self) -> None:
        """Close the session and stop its worker."""
        if self._worker.closed:
            return
        await self._run(self._session.close)
        self._worker.close(wait=True)

    @property
    def worker(self) -> SessionWorker:
        return self._worker

    @property
    def session(self) -> Session:
        """Return the wrapped synchronous session."""
        return self._session

    @property
    def closed(self) -> bool:
        return self._session.closed

    @property
    def in_transaction(self) -> bool:
        return self._session.in_transaction

    @property
    def transaction(self) -> Transaction | None:
        return self._session.transaction

    @property
    def isolation_level(self) -> IsolationLevel:
        return self._session.isolation_level

    @property
    def autocommit(self) -> bool:
        return self._session.autocommit

    async def __aenter__(self) -> "AsyncSession":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
