"""Task fan-out used to compute package spaces.

Package space computation is split into phases; within a phase every
resource is handled by an independent task. :class:`TaskGroup` submits those
tasks to a :class:`concurrent.futures.Executor` and waits for all of them,
including tasks submitted by other tasks, re-raising the first failure.
"""

import threading
from concurrent.futures import Executor, Future
from typing import Callable

__all__ = ["InlineExecutor", "TaskGroup"]


class InlineExecutor(Executor):
    """Executor running every task immediately in the submitting thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class TaskGroup:
    """A batch of tasks submitted to an executor and awaited together."""

    def __init__(self, executor: Executor):
        self._executor = executor
        self._lock = threading.Lock()
        self._pending: list[Future] = []

    def execute(self, task: Callable, *args):
        future = self._executor.submit(task, *args)
        with self._lock:
            self._pending.append(future)

    def wait(self):
        """Block until every submitted task has finished.

        Raises:
            Exception: The exception of the first failed task, in submission order.
        """
        failure = None
        while True:
            with self._lock:
                pending, self._pending = self._pending, []
            if not pending:
                break
            for future in pending:
                exception = future.exception()
                if exception is not None and failure is None:
                    failure = exception
        if failure is not None:
            raise failure
