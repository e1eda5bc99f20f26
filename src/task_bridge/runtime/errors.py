from __future__ import annotations


class TaskBridgeError(Exception):
    pass


class WorkerEnvironmentError(TaskBridgeError):
    """Worker runtime cannot be located, built, or is incompatible."""


class TransportError(TaskBridgeError):
    """I/O failure on the channel. The channel is unusable afterwards."""


class ProtocolError(TaskBridgeError):
    """A line looked like a protocol message but could not be decoded."""


class WorkerReportedError(TaskBridgeError):
    """The submitted script raised inside the worker."""

    def __init__(self, task_id: str, error: str) -> None:
        super().__init__(error)
        self.task_id = task_id
        self.error = error


class AlreadyStartedError(TaskBridgeError):
    pass
