from __future__ import annotations
import subprocess
import threading
from logging import getLogger
from typing import Callable, IO, List, Optional

from task_bridge.runtime.codec import decode_message, encode_message
from task_bridge.runtime.config import ChannelConfig
from task_bridge.runtime.environment import Environment
from task_bridge.runtime.errors import (
    ProtocolError,
    TransportError,
    WorkerEnvironmentError,
)
from task_bridge.runtime.types import Message, new_id
from task_bridge.runtime.zmq_bus import ControllerBus


logger = getLogger(__name__)
worker_logger = getLogger("task_bridge.worker")


class WorkerChannel:
    """
    worker プロセス 1つ分のチャネル。
      - open(): worker を起動し reader thread を開始
      - send(): 1 メッセージ書く（transport lock で直列化）
      - close(): stdin を閉じて停止を通知 → grace 待ち → terminate → kill

    Decoded messages are handed to on_message on the reader thread. A fault
    (EOF, unexpected exit, too many malformed messages, write failure) is
    reported once through on_fault.
    """

    def __init__(
        self,
        environment: Environment,
        *,
        on_message: Callable[[Message], None],
        on_fault: Callable[[TransportError], None],
        config: Optional[ChannelConfig] = None,
        name: Optional[str] = None,
    ) -> None:
        self.environment = environment
        self.on_message = on_message
        self.on_fault = on_fault
        self.config = config or ChannelConfig()
        self.name = name or f"worker_{new_id()[:8]}"
        self.exit_code: Optional[int] = None

        self._proc: Optional[subprocess.Popen] = None
        self._bus: Optional[ControllerBus] = None
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._closing = threading.Event()
        self._closed = False
        self._fault: Optional[TransportError] = None
        self._protocol_errors = 0
        self._threads: List[threading.Thread] = []

    # ---------- lifecycle ----------
    @property
    def is_open(self) -> bool:
        return (
            self._proc is not None
            and self._proc.poll() is None
            and not self._closing.is_set()
            and self._fault is None
        )

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def open(self) -> None:
        with self._state_lock:
            if self._closed:
                raise TransportError(f"channel {self.name} is closed")
            if self._proc is not None:
                return

            args = [
                "--transport",
                self.config.transport,
                "--name",
                self.name,
                "--log-level",
                self.config.worker_log_level,
            ]
            if self.config.transport == "zmq":
                self._bus = ControllerBus(
                    self.name,
                    on_line=self._on_line,
                    on_error=self._on_fault,
                    connect_timeout_sec=self.config.connect_timeout_sec,
                )
                args += ["--connect", self._bus.connect_addr]

            command = self.environment.command(*args)
            try:
                self._proc = subprocess.Popen(  # noqa: S603
                    command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=self.environment.process_env(),
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as e:
                if self._bus is not None:
                    self._bus.stop()
                raise WorkerEnvironmentError(
                    f"cannot start worker {command[0]}: {e}"
                ) from e
            logger.info(
                "worker %s started (pid=%s, transport=%s)",
                self.name,
                self._proc.pid,
                self.config.transport,
            )

            self._spawn(self._pump_stderr, "stderr")
            if self._bus is None:
                self._spawn(self._read_stdio, "reader")
            else:
                self._spawn(self._pump_stdout, "stdout")
                self._bus.start()

    def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            self._closing.set()
        proc = self._proc
        try:
            if proc is not None:
                self._stop_worker(proc)
        finally:
            try:
                if self._bus is not None:
                    self._bus.stop()
            finally:
                current = threading.current_thread()
                for th in self._threads:
                    if th is not current:
                        th.join(timeout=2.0)
                if proc is not None:
                    self._release_streams(proc)
                logger.info("worker %s closed (exit code %s)", self.name, self.exit_code)

    def _stop_worker(self, proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            # stdin EOF が停止の合図
            with self._write_lock:
                try:
                    if proc.stdin:
                        proc.stdin.close()
                except (OSError, ValueError) as e:
                    logger.debug("closing stdin of %s failed: %s", self.name, e)
            try:
                proc.wait(timeout=self.config.shutdown_grace_sec)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "worker %s did not stop within %.1fs; terminating",
                    self.name,
                    self.config.shutdown_grace_sec,
                )
                _terminate_process(proc)
        self.exit_code = proc.returncode

    def _release_streams(self, proc: subprocess.Popen) -> None:
        current = threading.current_thread()
        readers_alive = any(
            th.is_alive() for th in self._threads if th is not current
        )
        streams: List[Optional[IO[str]]] = [proc.stdin]
        if not readers_alive:
            streams += [proc.stdout, proc.stderr]
        for stream in streams:
            if stream is None:
                continue
            try:
                stream.close()
            except (OSError, ValueError) as e:
                logger.debug("closing stream of %s failed: %s", self.name, e)

    # ---------- writing ----------
    def send(self, msg: Message) -> None:
        line = encode_message(msg)
        if self._fault is not None:
            raise TransportError(f"channel {self.name} faulted: {self._fault}")
        if self._proc is None or self._closing.is_set():
            raise TransportError(f"channel {self.name} is not open")

        if self._bus is not None:
            try:
                self._bus.send(line)
            except TransportError as e:
                self._on_fault(e)
                raise
            return

        with self._write_lock:
            try:
                assert self._proc.stdin is not None
                self._proc.stdin.write(line + "\n")
                self._proc.stdin.flush()
            except (OSError, ValueError) as e:
                cause = e
            else:
                return
        error = TransportError(f"write to worker {self.name} failed: {cause}")
        self._on_fault(error)
        raise error from cause

    # ---------- reading ----------
    def _spawn(self, target: Callable[[], None], role: str) -> None:
        th = threading.Thread(target=target, name=f"{self.name}-{role}", daemon=True)
        self._threads.append(th)
        th.start()

    def _read_stdio(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        try:
            for line in self._proc.stdout:
                self._on_line(line)
        except (OSError, ValueError) as e:
            if not self._closing.is_set():
                self._on_fault(TransportError(f"read from worker {self.name} failed: {e}"))
            return
        self._worker_gone()

    def _pump_stdout(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        try:
            for line in self._proc.stdout:
                if line.strip():
                    worker_logger.debug("[%s] %s", self.name, line.rstrip())
        except (OSError, ValueError):
            return
        self._worker_gone()

    def _pump_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        try:
            for line in self._proc.stderr:
                worker_logger.debug("[%s] %s", self.name, line.rstrip())
        except (OSError, ValueError):
            return

    def _worker_gone(self) -> None:
        if self._closing.is_set():
            return
        assert self._proc is not None
        try:
            code = self._proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            code = None
        self._on_fault(
            TransportError(f"worker {self.name} exited unexpectedly (exit code {code})")
        )

    def _on_line(self, line: str) -> None:
        try:
            msg = decode_message(line)
        except ProtocolError as e:
            self._protocol_errors += 1
            logger.warning("dropping malformed message from %s: %s", self.name, e)
            if self._protocol_errors >= self.config.max_protocol_errors:
                self._on_fault(
                    TransportError(
                        f"{self._protocol_errors} consecutive malformed messages "
                        f"from {self.name}"
                    )
                )
            return
        if msg is None:
            if line.strip():
                worker_logger.debug("[%s] %s", self.name, line.rstrip())
            return
        self._protocol_errors = 0
        try:
            self.on_message(msg)
        except Exception:
            logger.exception("dispatch of %s from %s failed", type(msg).__name__, self.name)

    def _on_fault(self, error: TransportError) -> None:
        with self._state_lock:
            if self._fault is not None or self._closing.is_set():
                return
            self._fault = error
        logger.error("channel %s faulted: %s", self.name, error)
        self.on_fault(error)


def _terminate_process(proc: subprocess.Popen) -> None:
    try:
        proc.terminate()
    except OSError:
        return
    try:
        proc.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            proc.kill()
        except OSError:
            return
        proc.wait()
