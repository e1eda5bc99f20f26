from __future__ import annotations
import queue
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from logging import getLogger
from typing import Callable, List, Optional, Tuple

import zmq

from task_bridge.runtime.errors import TransportError


logger = getLogger(__name__)

_Outgoing = Tuple[bytes, float, "Future[None]"]


class ControllerBus:
    """
    controller側の ZMQ バス。
    ROUTERで worker と接続し、
      - send(): worker へ 1 メッセージ送る
      - recv loop: worker からのメッセージを on_line に渡す
    socket は loop thread だけが触る。他 thread からの send は outbox 経由。
    """

    def __init__(
        self,
        worker_name: str,
        *,
        on_line: Callable[[str], None],
        on_error: Callable[[TransportError], None],
        bind_host: str = "127.0.0.1",
        connect_timeout_sec: float = 10.0,
    ) -> None:
        self.worker_name = worker_name
        self.on_line = on_line
        self.on_error = on_error
        self.connect_timeout_sec = connect_timeout_sec

        self._ident = worker_name.encode("utf-8")
        self._ctx = zmq.Context.instance()
        self._sock = self._ctx.socket(zmq.ROUTER)
        # すぐ再起動できるように
        self._sock.setsockopt(zmq.LINGER, 0)
        # 未接続の worker 宛ては黙って捨てずに EHOSTUNREACH
        self._sock.setsockopt(zmq.ROUTER_MANDATORY, 1)
        port = self._sock.bind_to_random_port(f"tcp://{bind_host}")
        self.connect_addr = f"tcp://{bind_host}:{port}"

        self._outbox: "queue.Queue[_Outgoing]" = queue.Queue()
        self._stop = threading.Event()
        self._th: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._th and self._th.is_alive():
            return
        self._th = threading.Thread(
            target=self._loop, name=f"bus-{self.worker_name}", daemon=True
        )
        self._th.start()

    def stop(self) -> None:
        self._stop.set()
        if self._th is None:
            self._sock.close(0)
            return
        if self._th is not threading.current_thread():
            self._th.join(timeout=2.0)

    def send(self, line: str, timeout: Optional[float] = None) -> None:
        if self._stop.is_set():
            raise TransportError("zmq bus is stopped")
        wait = self.connect_timeout_sec if timeout is None else timeout
        item: _Outgoing = (line.encode("utf-8"), time.monotonic() + wait, Future())

        if self._th is threading.current_thread():
            # listener から呼ばれた場合は loop thread 上なので直接送る
            while not self._try_send(item):
                time.sleep(0.01)
        else:
            self._outbox.put(item)
        try:
            item[2].result(timeout=wait + 1.0)
        except FutureTimeout as e:
            raise TransportError(f"send to {self.worker_name} timed out") from e

    def _try_send(self, item: _Outgoing) -> bool:
        payload, deadline, fut = item
        # ROUTER: [identity][empty][payload]
        try:
            self._sock.send_multipart([self._ident, b"", payload], flags=zmq.NOBLOCK)
        except zmq.ZMQError as e:
            if e.errno in (zmq.EHOSTUNREACH, zmq.EAGAIN):
                if time.monotonic() < deadline:
                    return False
                fut.set_exception(
                    TransportError(f"worker {self.worker_name} is not reachable: {e}")
                )
                return True
            fut.set_exception(TransportError(f"zmq send failed: {e}"))
            return True
        fut.set_result(None)
        return True

    def _loop(self) -> None:
        pending: List[_Outgoing] = []
        try:
            while not self._stop.is_set():
                while True:
                    try:
                        pending.append(self._outbox.get_nowait())
                    except queue.Empty:
                        break
                # 順序を保つため、送れなかった時点で打ち切る
                while pending and self._try_send(pending[0]):
                    pending.pop(0)

                try:
                    if not self._sock.poll(10, zmq.POLLIN):
                        continue
                    parts = self._sock.recv_multipart(zmq.NOBLOCK)
                except zmq.Again:
                    continue
                except zmq.ZMQError as e:
                    if not self._stop.is_set():
                        self.on_error(TransportError(f"zmq receive failed: {e}"))
                    break

                # worker -> controller: [identity][empty][payload]
                self.on_line(parts[-1].decode("utf-8", errors="replace"))
        finally:
            while True:
                try:
                    pending.append(self._outbox.get_nowait())
                except queue.Empty:
                    break
            for _payload, _deadline, fut in pending:
                if not fut.done():
                    fut.set_exception(TransportError("zmq bus is stopped"))
            self._sock.close(0)
            logger.debug("bus for %s stopped", self.worker_name)
