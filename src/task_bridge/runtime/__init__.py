from .service import Service
from .task import Task
from .channel import WorkerChannel
from .client import EventQueue, run_with_timeout
from .config import ChannelConfig
from .environment import Environment, EnvironmentKind, EnvironmentSpec, build, resolve
from .errors import (
    AlreadyStartedError,
    ProtocolError,
    TaskBridgeError,
    TransportError,
    WorkerEnvironmentError,
    WorkerReportedError,
)
from .types import ResponseType, RequestType, TaskEvent, TaskStatus, WaitOutcome

__all__ = [
    "Service",
    "Task",
    "WorkerChannel",
    "EventQueue",
    "run_with_timeout",
    "ChannelConfig",
    "Environment",
    "EnvironmentKind",
    "EnvironmentSpec",
    "build",
    "resolve",
    "AlreadyStartedError",
    "ProtocolError",
    "TaskBridgeError",
    "TransportError",
    "WorkerEnvironmentError",
    "WorkerReportedError",
    "ResponseType",
    "RequestType",
    "TaskEvent",
    "TaskStatus",
    "WaitOutcome",
]
