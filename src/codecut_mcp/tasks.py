"""
Cancellable background tasks with progress reporting.

Long-running work (map import, name guessing) runs on a worker thread.
Tasks report through a ``TaskMonitor`` and must not touch view state; they
return a result that the request thread picks up.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("codecut.tasks")

MAX_FINISHED_TASKS = 100


class TaskCancelledError(Exception):
    """Raised by ``TaskMonitor.check_cancelled`` once cancel was requested."""
    pass


class TaskMonitor:
    """Progress and cancellation state shared between a task and its caller."""

    def __init__(self, title: str = ""):
        self.title = title
        self._lock = threading.Lock()
        self._cancelled = threading.Event()
        self._message = ""
        self._maximum = 0
        self._progress = 0

    def initialize(self, maximum: int) -> None:
        with self._lock:
            self._maximum = maximum
            self._progress = 0

    def set_message(self, message: str) -> None:
        with self._lock:
            self._message = message

    def set_progress(self, value: int) -> None:
        with self._lock:
            self._progress = value

    def increment_progress(self, amount: int = 1) -> None:
        with self._lock:
            self._progress += amount

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise TaskCancelledError(f"{self.title or 'Task'} cancelled")

    @property
    def message(self) -> str:
        with self._lock:
            return self._message

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    @property
    def maximum(self) -> int:
        with self._lock:
            return self._maximum

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "message": self._message,
                "progress": self._progress,
                "maximum": self._maximum,
                "cancelled": self._cancelled.is_set(),
            }


class BackgroundTask:
    """Base class for work handed to ``TaskManager``."""

    title = "Task"

    def run(self, monitor: TaskMonitor) -> Any:
        raise NotImplementedError


class TaskState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TaskHandle:
    """Bookkeeping for a launched task."""
    id: str
    task: BackgroundTask
    monitor: TaskMonitor
    state: TaskState = TaskState.PENDING
    result: Any = None
    error: Optional[str] = None
    started: float = field(default_factory=time.time)
    finished: Optional[float] = None
    thread: Optional[threading.Thread] = None

    def status(self) -> Dict[str, Any]:
        status = {
            "id": self.id,
            "title": self.task.title,
            "state": self.state.value,
            **self.monitor.snapshot(),
        }
        if self.error:
            status["error"] = self.error
        if self.finished is not None:
            status["elapsed"] = round(self.finished - self.started, 3)
        return status


class TaskManager:
    """Runs background tasks on daemon threads and tracks their outcome.

    Only the newest ``max_finished`` finished tasks are kept; running tasks
    are never dropped.
    """

    def __init__(self, max_finished: int = MAX_FINISHED_TASKS):
        self._tasks: Dict[str, TaskHandle] = {}
        self._lock = threading.Lock()
        self.max_finished = max_finished

    def _register(self, handle: TaskHandle) -> None:
        with self._lock:
            finished = [k for k, h in self._tasks.items() if h.finished is not None]
            for key in finished[:max(0, len(finished) - self.max_finished + 1)]:
                del self._tasks[key]
            self._tasks[handle.id] = handle

    def launch(self, task: BackgroundTask) -> TaskHandle:
        handle = TaskHandle(
            id=uuid.uuid4().hex[:8],
            task=task,
            monitor=TaskMonitor(task.title),
        )
        thread = threading.Thread(
            target=self._run, args=(handle,), name=f"codecut-{handle.id}", daemon=True
        )
        handle.thread = thread
        self._register(handle)
        logger.info(f"Launching task {handle.id}: {task.title}")
        thread.start()
        return handle

    def run_inline(self, task: BackgroundTask) -> TaskHandle:
        """Run on the calling thread; same bookkeeping as ``launch``."""
        handle = TaskHandle(
            id=uuid.uuid4().hex[:8],
            task=task,
            monitor=TaskMonitor(task.title),
        )
        self._register(handle)
        self._run(handle)
        return handle

    def _run(self, handle: TaskHandle) -> None:
        handle.state = TaskState.RUNNING
        try:
            handle.result = handle.task.run(handle.monitor)
            if handle.monitor.is_cancelled:
                handle.state = TaskState.CANCELLED
            else:
                handle.state = TaskState.DONE
        except TaskCancelledError:
            handle.state = TaskState.CANCELLED
            logger.info(f"Task {handle.id} cancelled")
        except Exception as e:
            handle.state = TaskState.FAILED
            handle.error = str(e)
            logger.error(f"Task {handle.id} ({handle.task.title}) failed: {e}")
        finally:
            handle.finished = time.time()

    def get(self, task_id: str) -> TaskHandle:
        with self._lock:
            if task_id not in self._tasks:
                raise KeyError(f"Unknown task: {task_id}")
            return self._tasks[task_id]

    def cancel(self, task_id: str) -> TaskHandle:
        handle = self.get(task_id)
        handle.monitor.cancel()
        logger.info(f"Cancel requested for task {task_id}")
        return handle

    def wait(self, task_id: str, timeout: Optional[float] = None) -> TaskHandle:
        handle = self.get(task_id)
        if handle.thread is not None:
            handle.thread.join(timeout)
        return handle

    def all(self) -> list:
        with self._lock:
            return list(self._tasks.values())
