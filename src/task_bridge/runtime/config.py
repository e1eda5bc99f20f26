"""Channel configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass

TRANSPORTS = ("stdio", "zmq")


@dataclass(slots=True)
class ChannelConfig:
    """Settings for one worker channel."""

    transport: str = "stdio"
    shutdown_grace_sec: float = 5.0
    connect_timeout_sec: float = 10.0
    max_protocol_errors: int = 10
    worker_log_level: str = "WARNING"

    def __post_init__(self) -> None:
        if self.transport not in TRANSPORTS:
            raise ValueError(
                f"unknown transport {self.transport!r}, expected one of {TRANSPORTS}"
            )

    @classmethod
    def from_env(cls) -> ChannelConfig:
        """Load settings from TASK_BRIDGE_* environment variables."""

        return cls(
            transport=os.getenv("TASK_BRIDGE_TRANSPORT", "stdio"),
            shutdown_grace_sec=float(os.getenv("TASK_BRIDGE_SHUTDOWN_GRACE_SEC", "5.0")),
            connect_timeout_sec=float(
                os.getenv("TASK_BRIDGE_CONNECT_TIMEOUT_SEC", "10.0")
            ),
            max_protocol_errors=int(os.getenv("TASK_BRIDGE_MAX_PROTOCOL_ERRORS", "10")),
            worker_log_level=os.getenv("TASK_BRIDGE_WORKER_LOG_LEVEL", "WARNING"),
        )
