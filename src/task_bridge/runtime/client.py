from __future__ import annotations
import queue
from logging import getLogger
from typing import Iterator, Optional

from task_bridge.runtime.task import Task
from task_bridge.runtime.types import ResponseType, TaskEvent, TaskStatus, WaitOutcome


logger = getLogger(__name__)

_TERMINAL_EVENTS = (
    ResponseType.Completion,
    ResponseType.Failure,
    ResponseType.Cancellation,
)
_EVENT_FOR_STATUS = {
    TaskStatus.Completed: ResponseType.Completion,
    TaskStatus.Failed: ResponseType.Failure,
    TaskStatus.Canceled: ResponseType.Cancellation,
}


class EventQueue:
    """
    Task のイベントを queue に積む subscriber。
    reader thread をブロックせずに、呼び出し側の thread でイベントを処理できる。
    """

    def __init__(self, task: Task, max_queue: int = 0) -> None:
        self.task = task
        self._q: "queue.Queue[TaskEvent]" = queue.Queue(maxsize=max_queue)
        task.listen(self._on_event)
        if task.status.is_finished():
            self._on_event(TaskEvent(task, _EVENT_FOR_STATUS[task.status]))

    def _on_event(self, ev: TaskEvent) -> None:
        try:
            self._q.put_nowait(ev)
        except queue.Full:
            logger.warning("event queue full, dropping %s for %s", ev.type, self.task)

    def get(self, timeout: Optional[float] = None) -> TaskEvent:
        return self._q.get(timeout=timeout)

    def events(self, timeout: Optional[float] = None) -> Iterator[TaskEvent]:
        """Yield events until (and including) the terminal one."""
        while True:
            try:
                ev = self._q.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError(
                    f"no event from task {self.task.task_id} within {timeout}s"
                ) from None
            yield ev
            if ev.type in _TERMINAL_EVENTS:
                return


def run_with_timeout(
    task: Task, timeout: float, *, cancel_grace: float = 5.0
) -> TaskStatus:
    """
    timeout 秒待って終わらなければ cancel を要求し、さらに cancel_grace 秒待つ。
    The worker may ignore the request; the task then stays RUNNING until its
    service is closed.
    """
    if task.status == TaskStatus.Queued:
        task.start()
    if task.wait_for(timeout) is WaitOutcome.TimedOut:
        logger.info(
            "task %s still running after %.1fs; requesting cancel", task.task_id, timeout
        )
        task.cancel()
        task.wait_for(cancel_grace)
    return task.status
