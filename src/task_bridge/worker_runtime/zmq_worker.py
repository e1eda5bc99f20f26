from __future__ import annotations
import queue
import threading
from logging import getLogger
from typing import IO

import zmq

from task_bridge.worker_runtime.worker import PythonWorker


logger = getLogger(__name__)


class ZmqWorker:
    """
    DEALER worker.
    controller(ROUTER)から SUBMIT / CANCEL を受け取り、script を実行して応答を返す。
    socket は serve_forever の thread だけが触る。task thread からの送信は outbox 経由。
    stdin の EOF（controller 側の close）で終了する。
    """

    def __init__(self, *, worker_name: str, connect_addr: str) -> None:
        self.worker_name = worker_name
        self.connect_addr = connect_addr
        self.worker = PythonWorker(send_line=self._outbox_put)

        self._outbox: "queue.Queue[bytes]" = queue.Queue()
        self._stop = threading.Event()

        self._ctx = zmq.Context.instance()
        self._sock = self._ctx.socket(zmq.DEALER)
        self._sock.setsockopt(zmq.IDENTITY, worker_name.encode("utf-8"))
        self._sock.setsockopt(zmq.LINGER, 1000)
        self._sock.connect(connect_addr)

    def _outbox_put(self, line: str) -> None:
        self._outbox.put(line.encode("utf-8"))

    def _watch_stdin(self, stdin: IO[str]) -> None:
        for _ in stdin:
            pass
        self._stop.set()

    def _flush(self) -> None:
        while True:
            try:
                payload = self._outbox.get_nowait()
            except queue.Empty:
                return
            # DEALER: [empty][payload]（ROUTER側が empty を期待するため）
            self._sock.send_multipart([b"", payload])

    def serve_forever(self, stdin: IO[str], shutdown_timeout: float = 3.0) -> None:
        logger.info("worker start (zmq %s)", self.connect_addr)
        threading.Thread(target=self._watch_stdin, args=(stdin,), daemon=True).start()
        try:
            while not self._stop.is_set():
                self._flush()
                if not self._sock.poll(10, zmq.POLLIN):
                    continue
                parts = self._sock.recv_multipart()
                self.worker.handle_line(parts[-1].decode("utf-8", errors="replace"))
            logger.info("stdin closed, shutting down")
            # 実行中の task の最終応答を送り切る
            done = threading.Thread(
                target=self.worker.shutdown, args=(shutdown_timeout,), daemon=True
            )
            done.start()
            while done.is_alive():
                self._flush()
                done.join(0.01)
            self._flush()
        finally:
            self._sock.close()
