from __future__ import annotations
import ast
import sys
import threading
import traceback
from logging import getLogger
from typing import Any, Callable, Dict, IO, List, Optional

from task_bridge.runtime.codec import decode_message, encode_message
from task_bridge.runtime.errors import ProtocolError
from task_bridge.runtime.types import (
    Cancel,
    Cancellation,
    Completion,
    Failure,
    Launch,
    Message,
    Progress,
    Submit,
)


logger = getLogger(__name__)


class WorkerTask:
    """
    script から `task` として見えるハンドル。

        task.update("loading", current=1, maximum=3)
        if task.cancel_requested:
            task.cancel()
        task.outputs["y"] = ...
    """

    def __init__(
        self, worker: "PythonWorker", task_id: str, script: str, inputs: Dict[str, Any]
    ) -> None:
        self.task_id = task_id
        self.script = script
        self.inputs = inputs
        self.outputs: Dict[str, Any] = {}
        self.cancel_requested = False
        self.thread: Optional[threading.Thread] = None

        self._worker = worker
        self._lock = threading.Lock()
        self._finished = False
        self._current = 0
        self._maximum = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def update(
        self,
        message: Optional[str] = None,
        current: Optional[int] = None,
        maximum: Optional[int] = None,
    ) -> None:
        for name, v in (("current", current), ("maximum", maximum)):
            if v is not None and int(v) < 0:
                raise ValueError(f"{name} must be non-negative, got {v!r}")
        with self._lock:
            if self._finished:
                return
            if current is not None:
                self._current = int(current)
            if maximum is not None:
                self._maximum = int(maximum)
            msg = Progress(self.task_id, self._current, self._maximum, message)
        self._worker.send(msg)

    def cancel(self) -> None:
        if self._finish():
            self._worker.send(Cancellation(self.task_id))

    def fail(self, error: str) -> None:
        if self._finish():
            self._worker.send(Failure(self.task_id, error))

    def _finish(self) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            return True

    def _complete(self) -> None:
        if not self._finish():
            return
        try:
            self._worker.send(Completion(self.task_id, self.outputs))
        except (TypeError, ValueError) as e:
            # outputs に送れない値が入っていた
            self._worker.send(Failure(self.task_id, f"cannot encode outputs: {e}"))

    def run(self) -> None:
        self._worker.send(Launch(self.task_id))
        binding: Dict[str, Any] = {"__name__": "__main__", **self.inputs, "task": self}
        try:
            tree = ast.parse(self.script, filename=f"<task {self.task_id}>")
            tail: Optional[ast.Expression] = None
            if tree.body and isinstance(tree.body[-1], ast.Expr):
                tail = ast.Expression(tree.body.pop().value)
            exec(compile(tree, f"<task {self.task_id}>", "exec"), binding)
            if tail is not None:
                value = eval(compile(tail, f"<task {self.task_id}>", "eval"), binding)
                if value is not None and "result" not in self.outputs:
                    self.outputs["result"] = value
        except Exception:
            self.fail(traceback.format_exc())
        else:
            self._complete()
        finally:
            self._worker._done(self)


class PythonWorker:
    """
    worker 側ブリッジ。
    controller から SUBMIT / CANCEL を受け取り、script を thread で実行して応答を返す。
    send_line は transport への 1 行書き込み（thread-safe である必要はない）。
    """

    def __init__(self, *, send_line: Callable[[str], None]) -> None:
        self._send_line = send_line
        self._send_lock = threading.Lock()
        self._lock = threading.Lock()
        self._tasks: Dict[str, WorkerTask] = {}

    def send(self, msg: Message) -> None:
        line = encode_message(msg)
        with self._send_lock:
            try:
                self._send_line(line)
            except (OSError, ValueError) as e:
                logger.error("cannot send %s for %s: %s", type(msg).__name__, msg.task_id, e)

    def handle_line(self, line: str) -> None:
        try:
            msg = decode_message(line)
        except ProtocolError as e:
            logger.warning("dropping malformed request: %s", e)
            return
        if msg is None:
            if line.strip():
                logger.debug("ignoring non-protocol line: %s", line.rstrip())
            return

        match msg:
            case Submit():
                self._submit(msg)
            case Cancel(task_id=task_id):
                with self._lock:
                    task = self._tasks.get(task_id)
                if task is None:
                    logger.debug("cancel for unknown task %s", task_id)
                else:
                    task.cancel_requested = True
            case _:
                logger.warning("unexpected %s from controller", type(msg).__name__)

    def _submit(self, msg: Submit) -> WorkerTask:
        task = WorkerTask(self, msg.task_id, msg.script, msg.inputs)
        with self._lock:
            if msg.task_id in self._tasks:
                logger.warning("duplicate task id %s ignored", msg.task_id)
                return self._tasks[msg.task_id]
            self._tasks[msg.task_id] = task
        task.thread = threading.Thread(
            target=task.run, name=f"task-{msg.task_id[:8]}", daemon=True
        )
        task.thread.start()
        return task

    def _done(self, task: WorkerTask) -> None:
        with self._lock:
            self._tasks.pop(task.task_id, None)

    @property
    def running(self) -> List[WorkerTask]:
        with self._lock:
            return list(self._tasks.values())

    def join(self, timeout: Optional[float] = None) -> bool:
        for task in self.running:
            if task.thread is not None:
                task.thread.join(timeout)
        return not self.running

    def shutdown(self, timeout: float = 3.0) -> None:
        tasks = self.running
        for task in tasks:
            task.cancel_requested = True
        if tasks and not self.join(timeout):
            logger.warning("%d task(s) still running at shutdown", len(self.running))


def serve_stdio(stdin: IO[str], stdout: IO[str], shutdown_timeout: float = 3.0) -> None:
    """stdin から要求を読み、stdout に応答を書く。stdin の EOF で終了する。"""

    def send_line(line: str) -> None:
        stdout.write(line + "\n")
        stdout.flush()

    worker = PythonWorker(send_line=send_line)
    logger.info("worker start (stdio)")
    for line in stdin:
        worker.handle_line(line)
    logger.info("stdin closed, shutting down")
    worker.shutdown(shutdown_timeout)


def redirect_stdout() -> IO[str]:
    """
    Keep the real stdout for the protocol and send print() output to stderr.
    """
    protocol_out = sys.stdout
    sys.stdout = sys.stderr
    return protocol_out
