from __future__ import annotations
import threading
from logging import getLogger
from typing import Any, Dict, List, Mapping, Optional

from task_bridge.runtime.channel import WorkerChannel
from task_bridge.runtime.codec import validate_inputs
from task_bridge.runtime.config import ChannelConfig
from task_bridge.runtime.environment import Environment
from task_bridge.runtime.errors import TransportError
from task_bridge.runtime.task import Task
from task_bridge.runtime.types import Message, Request, TaskStatus, new_id


logger = getLogger(__name__)


class Service:
    """
    1つの worker channel 上で複数の Task を作成・追跡する facade。
    channel は最初の start() で起動する（open() で先に起動してもよい）。

        with environment.python() as service:
            task = service.task("task.outputs['y'] = sum(x)", {"x": [1.0, 2.0]})
            task.start().wait_for()
    """

    def __init__(
        self, environment: Environment, *, config: Optional[ChannelConfig] = None
    ) -> None:
        self.environment = environment
        self.config = config or ChannelConfig()

        self._lock = threading.Lock()
        self._tasks: Dict[str, Task] = {}
        self._channel: Optional[WorkerChannel] = None
        self._closed = False
        self._fault: Optional[TransportError] = None

    def __enter__(self) -> "Service":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---------- public ----------
    def task(self, script: str, inputs: Optional[Mapping[str, Any]] = None) -> Task:
        inputs = dict(inputs or {})
        validate_inputs(inputs)
        with self._lock:
            if self._closed:
                raise TransportError("service is closed")
            task = Task(self, new_id(), script, inputs)
            self._tasks[task.task_id] = task
        return task

    @property
    def tasks(self) -> List[Task]:
        with self._lock:
            return list(self._tasks.values())

    @property
    def channel(self) -> Optional[WorkerChannel]:
        return self._channel

    def open(self) -> "Service":
        self._ensure_channel()
        return self

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            channel = self._channel
        try:
            if channel is not None:
                channel.close()
        finally:
            with self._lock:
                tasks = list(self._tasks.values())
                self._tasks.clear()
            for task in tasks:
                if task._abort(TaskStatus.Canceled):
                    logger.info("task %s canceled: channel closed", task.task_id)

    # ---------- internal ----------
    def _ensure_channel(self) -> WorkerChannel:
        with self._lock:
            if self._closed:
                raise TransportError("service is closed")
            if self._fault is not None:
                raise TransportError(f"channel faulted: {self._fault}")
            if self._channel is None:
                channel = WorkerChannel(
                    self.environment,
                    on_message=self._dispatch,
                    on_fault=self._on_fault,
                    config=self.config,
                )
                channel.open()
                self._channel = channel
            return self._channel

    def _send(self, msg: Request) -> None:
        self._ensure_channel().send(msg)

    def _forget(self, task: Task) -> None:
        with self._lock:
            self._tasks.pop(task.task_id, None)

    def _dispatch(self, msg: Message) -> None:
        with self._lock:
            task = self._tasks.get(msg.task_id)
        if task is None:
            logger.debug(
                "dropping %s for unknown or finished task %s",
                type(msg).__name__,
                msg.task_id,
            )
            return
        task._handle(msg)
        if task.status.is_finished():
            self._forget(task)

    def _on_fault(self, error: TransportError) -> None:
        with self._lock:
            self._fault = error
            tasks = list(self._tasks.values())
            channel = self._channel
        for task in tasks:
            if task._fail_transport(error):
                self._forget(task)
        # fault 後の channel は使えないので閉じる
        if channel is not None:
            channel.close()
