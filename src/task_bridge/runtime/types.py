from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union, TYPE_CHECKING
from enum import StrEnum
import time
import uuid

if TYPE_CHECKING:
    from task_bridge.runtime.task import Task


def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


class TaskStatus(StrEnum):
    Queued = "QUEUED"
    Running = "RUNNING"
    Completed = "COMPLETED"
    Failed = "FAILED"
    Canceled = "CANCELED"

    def is_finished(self) -> bool:
        return self in (TaskStatus.Completed, TaskStatus.Failed, TaskStatus.Canceled)


class RequestType(StrEnum):
    Submit = "SUBMIT"
    Cancel = "CANCEL"


class ResponseType(StrEnum):
    Launch = "LAUNCH"
    Progress = "PROGRESS"
    Completion = "COMPLETION"
    Cancellation = "CANCELLATION"
    Failure = "FAILURE"


class WaitOutcome(StrEnum):
    Terminal = "TERMINAL"
    TimedOut = "TIMED_OUT"


# ---------- controller -> worker ----------
@dataclass(frozen=True)
class Submit:
    """
    controller -> worker に送る実行依頼
    """

    task_id: str
    script: str
    inputs: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Cancel:
    task_id: str


# ---------- worker -> controller ----------
@dataclass(frozen=True)
class Launch:
    task_id: str


@dataclass(frozen=True)
class Progress:
    task_id: str
    current: int = 0
    maximum: int = 0
    message: Optional[str] = None


@dataclass(frozen=True)
class Completion:
    task_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Cancellation:
    task_id: str


@dataclass(frozen=True)
class Failure:
    task_id: str
    error: str = ""


Request = Union[Submit, Cancel]
Response = Union[Launch, Progress, Completion, Cancellation, Failure]
Message = Union[Request, Response]


@dataclass(frozen=True)
class TaskEvent:
    """
    Task の listener に渡されるイベント。
    message is the response that caused it; local cancellation of a
    never-started task and forced cancellation on close carry None.
    """

    task: "Task"
    type: ResponseType
    message: Optional[Response] = None
    ts: float = field(default_factory=now_ts)
