from __future__ import annotations
import threading
from logging import getLogger
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from task_bridge.runtime.errors import (
    AlreadyStartedError,
    TaskBridgeError,
    TransportError,
    WorkerReportedError,
)
from task_bridge.runtime.types import (
    Cancel,
    Cancellation,
    Completion,
    Failure,
    Launch,
    Progress,
    Response,
    ResponseType,
    Submit,
    TaskEvent,
    TaskStatus,
    WaitOutcome,
)

if TYPE_CHECKING:
    from task_bridge.runtime.service import Service


logger = getLogger(__name__)

Listener = Callable[[TaskEvent], None]

EMPTY_FAILURE = "worker reported a failure without a description"


class Task:
    """
    worker 上で実行される 1 単位の処理。

    QUEUED -> RUNNING -> COMPLETED | FAILED | CANCELED

    State changes driven by worker messages happen on the channel's reader
    thread, and listeners run there too: a listener that blocks stalls
    delivery for every task on the same channel.
    """

    def __init__(
        self,
        service: "Service",
        task_id: str,
        script: str,
        inputs: Dict[str, Any],
    ) -> None:
        self.service = service
        self.task_id = task_id
        self.script = script
        self.inputs = inputs

        self.status = TaskStatus.Queued
        self.outputs: Dict[str, Any] = {}
        self.current = 0
        self.maximum = 0
        self.message: Optional[str] = None
        self.error: Optional[str] = None

        self._listeners: List[Listener] = []
        self._cond = threading.Condition()
        self._cancel_requested = False
        self._transport_error: Optional[TransportError] = None

    def __repr__(self) -> str:
        return f"Task(id={self.task_id}, status={self.status})"

    # ---------- caller side ----------
    def listen(self, callback: Listener) -> None:
        with self._cond:
            self._listeners.append(callback)

    def start(self) -> "Task":
        with self._cond:
            if self.status != TaskStatus.Queued:
                raise AlreadyStartedError(f"task {self.task_id} is already {self.status}")
            self.status = TaskStatus.Running
        try:
            self.service._send(Submit(self.task_id, self.script, self.inputs))
        except TaskBridgeError as e:
            if isinstance(e, TransportError):
                self._transport_error = e
            self._abort(TaskStatus.Failed, str(e))
            raise
        except Exception as e:
            # SUBMIT が送れなかった: RUNNING のまま残さない
            self._abort(TaskStatus.Failed, f"cannot submit task: {e}")
            raise
        return self

    def cancel(self) -> None:
        """
        RUNNING: CANCEL を送る。CANCELED になるのは worker の応答を受けてから。
        QUEUED: worker はまだ知らないので、その場で CANCELED にする。
        """
        with self._cond:
            if self.status.is_finished():
                return
            if self.status == TaskStatus.Queued:
                self.status = TaskStatus.Canceled
                self._cond.notify_all()
                local = True
            elif self._cancel_requested:
                return
            else:
                self._cancel_requested = True
                local = False

        if local:
            self.service._forget(self)
            self._fire(TaskEvent(self, ResponseType.Cancellation))
            return
        self.service._send(Cancel(self.task_id))

    def wait_for(self, timeout: Optional[float] = None) -> WaitOutcome:
        with self._cond:
            done = self._cond.wait_for(lambda: self.status.is_finished(), timeout=timeout)
        return WaitOutcome.Terminal if done else WaitOutcome.TimedOut

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def raise_for_status(self) -> None:
        if self.status != TaskStatus.Failed:
            return
        if self._transport_error is not None:
            raise self._transport_error
        raise WorkerReportedError(self.task_id, self.error or EMPTY_FAILURE)

    # ---------- reader thread ----------
    def _handle(self, msg: Response) -> None:
        with self._cond:
            if self.status != TaskStatus.Running:
                logger.debug(
                    "ignoring %s for %s task %s",
                    type(msg).__name__,
                    self.status,
                    self.task_id,
                )
                return

            match msg:
                case Launch():
                    kind = ResponseType.Launch
                case Progress(current=current, maximum=maximum, message=text):
                    self.current = max(self.current, current)
                    self.maximum = max(self.maximum, maximum)
                    if self.maximum > 0 and self.current > self.maximum:
                        self.maximum = self.current
                    if text is not None:
                        self.message = text
                    kind = ResponseType.Progress
                case Completion(outputs=outputs):
                    self.outputs = dict(outputs)
                    self.status = TaskStatus.Completed
                    kind = ResponseType.Completion
                case Failure(error=error):
                    self.error = error or EMPTY_FAILURE
                    self.status = TaskStatus.Failed
                    kind = ResponseType.Failure
                case Cancellation():
                    self.status = TaskStatus.Canceled
                    kind = ResponseType.Cancellation
                case _:
                    logger.warning(
                        "unexpected %s for task %s", type(msg).__name__, self.task_id
                    )
                    return

            if self.status.is_finished():
                self._cond.notify_all()
        self._fire(TaskEvent(self, kind, msg))

    def _abort(self, status: TaskStatus, error: Optional[str] = None) -> bool:
        """
        Channel-level termination: FAILED on a transport fault, CANCELED when
        the service is closed. No-op on a terminal task.
        """
        with self._cond:
            if self.status.is_finished():
                return False
            self.status = status
            if status == TaskStatus.Failed:
                self.error = error or EMPTY_FAILURE
            self._cond.notify_all()
        kind = (
            ResponseType.Failure if status == TaskStatus.Failed else ResponseType.Cancellation
        )
        self._fire(TaskEvent(self, kind))
        return True

    def _fail_transport(self, error: TransportError) -> bool:
        with self._cond:
            if self.status != TaskStatus.Running:
                return False
            self._transport_error = error
        return self._abort(TaskStatus.Failed, f"transport failure: {error}")

    def _fire(self, event: TaskEvent) -> None:
        with self._cond:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb(event)
            except Exception:
                logger.exception("listener for task %s raised", self.task_id)
