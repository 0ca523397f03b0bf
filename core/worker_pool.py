import threading
import time
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from queue import PriorityQueue, Empty
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Priority(IntEnum):
    BACKGROUND = 10
    SYNC = 40
    NORMAL = 50
    FULL_SCAN = 70
    SHUTDOWN = 999


class TaskState(IntEnum):
    QUEUED = 1
    RUNNING = 2
    COMPLETED = 3
    FAILED = 4


class TaskHandle:
    """Completion channel for a submitted task."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.state = TaskState.QUEUED
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()
        self._callbacks: List[Callable[["TaskHandle"], None]] = []
        self._lock = threading.Lock()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def add_done_callback(self, callback: Callable[["TaskHandle"], None]) -> None:
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        # Already finished: fire on the caller's thread.
        self._run_callback(callback)

    def _finish(self, state: TaskState, result: Any = None, error: Optional[BaseException] = None):
        with self._lock:
            self.state = state
            self.result = result
            self.error = error
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)

    def _run_callback(self, callback):
        try:
            callback(self)
        except Exception as e:  # why: callbacks are caller-supplied; one failure must not prevent remaining callbacks
            logger.error(f"Callback for task '{self.task_id}' failed: {e}", exc_info=True)


@dataclass
class _Task:
    task_id: str = field(compare=False)
    func: Callable = field(compare=False)
    priority: Priority = field(compare=False)
    handle: TaskHandle = field(compare=False)
    timestamp: float = field(compare=False, default_factory=time.perf_counter)
    args: tuple = field(compare=False, default_factory=tuple)
    kwargs: dict = field(compare=False, default_factory=dict)

    def __lt__(self, other):
        # why: inverted so higher Priority value wins; ties broken by insertion order
        if not isinstance(other, _Task):
            return NotImplemented
        if self.priority != other.priority:
            return self.priority > other.priority
        return self.timestamp < other.timestamp


class WorkerPool:
    """
    Fixed number of worker threads draining one priority queue.

    Submitting a task id that is still queued or running returns the existing
    handle instead of queueing a duplicate.
    """

    def __init__(self, num_workers: int = 2):
        if num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        self.num_workers = num_workers
        self._running = False
        self._shutting_down = threading.Event()
        self.task_queue: "PriorityQueue[_Task]" = PriorityQueue()
        self.worker_threads: List[threading.Thread] = []
        self._tasks: Dict[str, _Task] = {}
        self._tasks_lock = threading.Lock()

    def start(self):
        if self._running:
            return
        logger.info(f"WorkerPool: Starting with {self.num_workers} workers.")
        self._running = True
        self._shutting_down.clear()
        for i in range(self.num_workers):
            worker = threading.Thread(target=self._worker_loop, args=(i,), daemon=True)
            worker.name = f"IndexWorker-{i}"
            self.worker_threads.append(worker)
            worker.start()

    @property
    def running(self) -> bool:
        return self._running

    def submit(self, task_id: str, func: Callable, *args,
               priority: Priority = Priority.NORMAL, **kwargs) -> TaskHandle:
        if self._shutting_down.is_set():
            raise RuntimeError(f"WorkerPool shutting down. Rejecting task '{task_id}'.")
        if not self._running:
            self.start()

        with self._tasks_lock:
            existing = self._tasks.get(task_id)
            if existing is not None:
                logger.debug(f"Task '{task_id}' already {existing.handle.state.name}; returning its handle.")
                return existing.handle
            handle = TaskHandle(task_id)
            task = _Task(task_id=task_id, func=func, priority=priority, handle=handle,
                         args=args, kwargs=kwargs)
            self._tasks[task_id] = task

        self.task_queue.put(task)
        return handle

    def pending_count(self) -> int:
        with self._tasks_lock:
            return len(self._tasks)

    def _worker_loop(self, worker_id: int):
        thread_name = threading.current_thread().name
        logger.debug(f"WorkerPool: Worker {worker_id} ({thread_name}) started.")
        while self._running:
            try:
                # Short timeout to allow shutdown check.
                task = self.task_queue.get(timeout=0.2)
            except Empty:
                continue
            try:
                if task.task_id == '_SHUTDOWN_':
                    logger.debug(f"WorkerPool: Worker {worker_id} received shutdown sentinel. Exiting.")
                    break
                self._execute(task)
            finally:
                self.task_queue.task_done()

    def _execute(self, task: _Task):
        logger.debug(f"Worker executing task '{task.task_id}'.")
        task.handle.state = TaskState.RUNNING
        result, error = None, None
        try:
            result = task.func(*task.args, **task.kwargs)
        except Exception as e:  # why: task func is arbitrary caller code; the failure goes to the handle, not the worker
            error = e
            logger.error(f"Task '{task.task_id}' failed: {e}", exc_info=True)
        finally:
            with self._tasks_lock:
                self._tasks.pop(task.task_id, None)
        if error is None:
            task.handle._finish(TaskState.COMPLETED, result=result)
        else:
            task.handle._finish(TaskState.FAILED, error=error)

    def shutdown(self, timeout: float = 30.0):
        """
        Stops accepting tasks, fails every queued task, and waits for running
        tasks to finish.  Blocking.
        """
        if not self._running and not self.worker_threads:
            return

        logger.info("WorkerPool: Initiating shutdown. Discarding pending tasks.")
        self._shutting_down.set()

        discarded: List[_Task] = []
        while True:
            try:
                task = self.task_queue.get_nowait()
            except Empty:
                break
            self.task_queue.task_done()
            if task.task_id != '_SHUTDOWN_':
                discarded.append(task)
        for task in discarded:
            with self._tasks_lock:
                self._tasks.pop(task.task_id, None)
            task.handle._finish(TaskState.FAILED, error=RuntimeError("worker pool shut down"))
        if discarded:
            logger.info(f"WorkerPool: Discarded {len(discarded)} pending tasks.")

        for _ in range(self.num_workers):
            self.task_queue.put(_Task(task_id='_SHUTDOWN_', func=lambda: None,
                                      priority=Priority.SHUTDOWN, handle=TaskHandle('_SHUTDOWN_')))

        for i, worker in enumerate(self.worker_threads):
            worker.join(timeout)
            if worker.is_alive():
                logger.warning(f"WorkerPool: Worker {i} did not stop gracefully within timeout.")

        self._running = False
        self.worker_threads.clear()
        logger.info("WorkerPool: Shutdown complete.")
