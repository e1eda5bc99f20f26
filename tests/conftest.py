from __future__ import annotations

import sys
from typing import List

import pytest

from task_bridge.runtime import Service
from task_bridge.runtime.environment import Environment, EnvironmentKind
from task_bridge.runtime.types import Request


class RecordingService(Service):
    """Service whose requests are recorded instead of sent to a worker."""

    def __init__(self) -> None:
        super().__init__(
            Environment(
                executable=sys.executable, base=sys.prefix, kind=EnvironmentKind.System
            )
        )
        self.sent: List[Request] = []

    def _send(self, msg: Request) -> None:
        self.sent.append(msg)


@pytest.fixture
def recording_service() -> RecordingService:
    return RecordingService()
