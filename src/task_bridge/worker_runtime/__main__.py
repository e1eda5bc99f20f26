"""Worker bridge entry point: ``python -m task_bridge.worker_runtime``."""

from __future__ import annotations

import argparse
import sys
from logging import basicConfig

from task_bridge.worker_runtime.worker import redirect_stdout, serve_stdio
from task_bridge.worker_runtime.zmq_worker import ZmqWorker


def main() -> None:
    parser = argparse.ArgumentParser(prog="task_bridge.worker_runtime")

    parser.add_argument(
        "--transport",
        choices=("stdio", "zmq"),
        default="stdio",
        help="how requests and responses travel",
    )

    parser.add_argument(
        "--connect",
        default=None,
        help="controller address (zmq transport)",
    )

    parser.add_argument(
        "--name",
        default="worker",
        help="worker name, used as the zmq identity",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="logging level for worker diagnostics on stderr",
    )

    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=3.0,
        help="seconds to wait for running tasks after stdin closes",
    )

    args = parser.parse_args()

    basicConfig(
        stream=sys.stderr,
        level=args.log_level.upper(),
        format=f"%(asctime)s %(levelname)s [{args.name}] %(name)s: %(message)s",
    )

    if args.transport == "stdio":
        protocol_out = redirect_stdout()
        serve_stdio(sys.stdin, protocol_out, shutdown_timeout=args.shutdown_timeout)
        return

    if not args.connect:
        parser.error("--connect is required with --transport zmq")

    sys.stdout = sys.stderr
    worker = ZmqWorker(worker_name=args.name, connect_addr=args.connect)
    worker.serve_forever(sys.stdin, shutdown_timeout=args.shutdown_timeout)


if __name__ == "__main__":
    main()
