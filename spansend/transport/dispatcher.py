"""
Bounded, non-buffering request dispatcher.

The dispatcher is the backpressure mechanism of the transport. It owns at
most ``max_requests`` worker threads and has no queue: a submission is
handed straight to an idle worker, starts a new worker while below the cap,
or blocks the submitting thread until a worker frees up. Producers are
slowed down instead of requests piling up in memory.

Idle workers exit after ``keep_alive`` seconds, so an unused dispatcher
holds no threads.

A task cancelled while it runs gives its slot back at once. Its worker is
detached from the pool and exits when the task returns, so a request stuck
in a blocking read never holds up the producer.
"""

import itertools
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

from spansend.exceptions import DispatcherShutdownError


logger = logging.getLogger(__name__)

DEFAULT_KEEP_ALIVE = 60.0

_thread_counter = itertools.count()


class Task(Protocol):
    """Unit of work accepted by the dispatcher."""

    def run(self) -> None:
        ...

    def cancel(self) -> bool:
        ...

    def cancelled(self) -> bool:
        ...

    def add_done_callback(self, fn: Callable[[Any], None]) -> None:
        ...


class _Worker:
    """One dispatcher thread and its handoff slot."""

    def __init__(self, dispatcher: "RequestDispatcher", first_task: Task) -> None:
        self.task: Optional[Task] = first_task
        self.detached = False
        self.thread = threading.Thread(
            target=dispatcher._work,
            args=(self,),
            name=f"spansend-dispatcher-{next(_thread_counter)}",
            daemon=True,
        )


class RequestDispatcher:
    """Thread pool with a zero-capacity handoff.

    Total in-flight requests, and in-flight requests per host, are capped at
    ``max_requests``; one dispatcher serves exactly one endpoint identity, so
    both caps are the worker cap.

    Example:
        dispatcher = RequestDispatcher(max_requests=4)
        dispatcher.submit(call)          # blocks while 4 calls are running
        dispatcher.shutdown()
        if not dispatcher.await_termination(1.0):
            dispatcher.cancel_all()
    """

    def __init__(
        self,
        max_requests: int,
        keep_alive: float = DEFAULT_KEEP_ALIVE,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if keep_alive <= 0:
            raise ValueError("keep_alive must be positive")

        self._max_requests = max_requests
        self._keep_alive = keep_alive
        self._condition = threading.Condition()
        self._workers: set[_Worker] = set()
        self._idle: list[_Worker] = []
        self._active: dict[Any, _Worker] = {}
        self._shutdown = False

        # Metrics
        self._total_submitted = 0
        self._total_completed = 0
        self._total_blocked = 0

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def max_requests_per_host(self) -> int:
        return self._max_requests

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def worker_count(self) -> int:
        with self._condition:
            return len(self._workers)

    @property
    def running_count(self) -> int:
        with self._condition:
            return len(self._workers) - len(self._idle)

    def submit(self, task: Task) -> None:
        """Hand a task to a worker, blocking while all workers are busy.

        Raises:
            DispatcherShutdownError: If the dispatcher is, or becomes, shut
                down before the task could be handed off
        """
        with self._condition:
            blocked = False
            while True:
                if self._shutdown:
                    raise DispatcherShutdownError(
                        "Dispatcher is shut down, submission rejected"
                    )
                if self._idle:
                    worker = self._idle.pop()
                    worker.task = task
                    self._active[task] = worker
                    self._condition.notify_all()
                    break
                if len(self._workers) < self._max_requests:
                    worker = _Worker(self, task)
                    self._workers.add(worker)
                    self._active[task] = worker
                    worker.thread.start()
                    break
                if not blocked:
                    blocked = True
                    self._total_blocked += 1
                    logger.debug(
                        f"Dispatcher saturated ({self._max_requests} in flight), "
                        "blocking submitter"
                    )
                self._condition.wait()

            self._total_submitted += 1

        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: Task) -> None:
        if task.cancelled():
            self._release(task)

    def _release(self, task: Task) -> None:
        """Give the slot of a cancelled, still running task back to the pool."""
        with self._condition:
            worker = self._active.pop(task, None)
            if worker is None:
                return
            worker.detached = True
            self._workers.discard(worker)
            self._condition.notify_all()
        logger.debug(f"Released slot of cancelled task on {worker.thread.name}")

    def _work(self, worker: _Worker) -> None:
        task = worker.task
        worker.task = None
        while task is not None:
            try:
                task.run()
            except Exception:
                logger.exception("Dispatcher task raised")
            task = self._next_task(worker, task)

    def _next_task(self, worker: _Worker, finished: Task) -> Optional[Task]:
        with self._condition:
            self._active.pop(finished, None)
            self._total_completed += 1

            if worker.detached:
                return None

            if self._shutdown:
                self._workers.discard(worker)
                self._condition.notify_all()
                return None

            self._idle.append(worker)
            self._condition.notify_all()

            deadline = time.monotonic() + self._keep_alive
            while worker.task is None and not self._shutdown:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._condition.wait(remaining)

            task = worker.task
            worker.task = None
            if task is None:
                if worker in self._idle:
                    self._idle.remove(worker)
                self._workers.discard(worker)
                self._condition.notify_all()
            return task

    def shutdown(self) -> None:
        """Stop accepting work. Running tasks keep running."""
        with self._condition:
            if self._shutdown:
                return
            self._shutdown = True
            self._condition.notify_all()
        logger.debug("Dispatcher shut down")

    def await_termination(self, timeout: float) -> bool:
        """Wait for every worker to exit after ``shutdown()``.

        Returns:
            True if all workers exited within ``timeout`` seconds
        """
        with self._condition:
            return self._condition.wait_for(lambda: not self._workers, timeout)

    def cancel_all(self) -> int:
        """Cancel every task that is still running.

        Returns:
            Number of tasks cancelled
        """
        with self._condition:
            active = list(self._active)

        cancelled = sum(1 for task in active if task.cancel())
        if cancelled:
            logger.warning(f"Force-cancelled {cancelled} in-flight requests")
        return cancelled

    def get_stats(self) -> dict[str, Any]:
        with self._condition:
            return {
                "max_requests": self._max_requests,
                "workers": len(self._workers),
                "idle_workers": len(self._idle),
                "running": len(self._workers) - len(self._idle),
                "total_submitted": self._total_submitted,
                "total_completed": self._total_completed,
                "total_blocked": self._total_blocked,
                "shutdown": self._shutdown,
            }
