"""
Single-shot Asynchronous Task

A Task wraps a not-yet-started coroutine factory and exposes an observable
state machine:

    pending -> running -> success(result) | failure(error)

``run()`` is idempotent: the first call moves the task to ``running``
synchronously and schedules the work; later calls return the same future.
The future resolves to the terminal state and never raises (unless the task
is cancelled, which records a failure and then re-raises), so failures are
read from ``state`` (or re-raised by ``await task.result()``).
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from tilescale.engine.observable import Observable

T = TypeVar("T")


class TaskStatus(str, Enum):
    """Task state discriminator."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Pending:
    kind: TaskStatus = TaskStatus.PENDING


@dataclass(frozen=True)
class Running:
    kind: TaskStatus = TaskStatus.RUNNING


@dataclass(frozen=True)
class Success(Generic[T]):
    result: T
    kind: TaskStatus = TaskStatus.SUCCESS


@dataclass(frozen=True)
class Failure:
    error: BaseException
    kind: TaskStatus = TaskStatus.FAILURE


TaskState = Union[Pending, Running, Success, Failure]

TERMINAL_STATUSES = (TaskStatus.SUCCESS, TaskStatus.FAILURE)


class Task(Observable, Generic[T]):
    """Observable single-shot unit of asynchronous work."""

    def __init__(self, work: Optional[Callable[[], Awaitable[T]]] = None, name: str = "task"):
        super().__init__()
        self.name = name
        self._work = work
        self._state: TaskState = Pending()
        self._future: Optional["asyncio.Future[TaskState]"] = None

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def status(self) -> TaskStatus:
        return self._state.kind

    @property
    def is_finished(self) -> bool:
        return self._state.kind in TERMINAL_STATUSES

    async def execute(self) -> T:
        """The wrapped computation. Subclasses override this or pass ``work``."""
        if self._work is None:
            raise NotImplementedError(f"{type(self).__name__} has no work to run")
        return await self._work()

    def run(self) -> "asyncio.Future[TaskState]":
        """Start the work once; must be called from a running event loop."""
        if self._future is None:
            self._transition(Running())
            self._future = asyncio.ensure_future(self._run_to_completion())
            self._future.add_done_callback(self._on_cancelled)
        return self._future

    async def result(self) -> T:
        """Run (if needed) and return the result, re-raising a failure."""
        state = await self.run()
        if isinstance(state, Failure):
            raise state.error
        return state.result

    async def _run_to_completion(self) -> TaskState:
        try:
            value = await self.execute()
        except asyncio.CancelledError as e:
            # Cancellation still ends in a terminal state, then propagates
            self._transition(Failure(e))
            raise
        except Exception as e:
            self._transition(Failure(e))
        else:
            self._transition(Success(value))
        return self._state

    def _on_cancelled(self, future: "asyncio.Future[TaskState]"):
        # Cancelled before the work started: nothing else records the outcome
        if future.cancelled() and not self.is_finished:
            self._transition(Failure(asyncio.CancelledError()))

    def _transition(self, new_state: TaskState):
        if self._state.kind in TERMINAL_STATUSES:
            raise RuntimeError(
                f"Task '{self.name}' is already {self._state.kind.value}; "
                f"cannot move to {new_state.kind.value}"
            )
        self._state = new_state
        self._notify()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, status={self._state.kind.value})"


def describe_error(state: Any) -> Optional[str]:
    """Human-readable message for a failed state, ``None`` otherwise."""
    if isinstance(state, Failure):
        return getattr(state.error, "message", None) or str(state.error) or type(state.error).__name__
    return None
