from __future__ import annotations

import argparse
import json
import os
import sys
from logging import basicConfig
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from task_bridge.runtime.client import run_with_timeout
from task_bridge.runtime.codec import encode_value
from task_bridge.runtime.config import TRANSPORTS, ChannelConfig
from task_bridge.runtime.environment import EnvironmentSpec, build, resolve
from task_bridge.runtime.errors import TaskBridgeError
from task_bridge.runtime.types import ResponseType, TaskEvent, TaskStatus

EXIT_CODES = {
    TaskStatus.Completed: 0,
    TaskStatus.Failed: 1,
    TaskStatus.Canceled: 2,
}


def parse_input(text: str) -> Tuple[str, Any]:
    """
    "x=1,2,3" -> ("x", [1, 2, 3]);  "s=0.5" -> ("s", 0.5)
    """
    name, sep, raw = text.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE[,VALUE...], got {text!r}")
    items = [p.strip() for p in raw.split(",") if p.strip()]
    try:
        values: List[Any] = [int(p) for p in items]
    except ValueError:
        try:
            values = [float(p) for p in items]
        except ValueError:
            raise argparse.ArgumentTypeError(f"non-numeric value in {text!r}") from None
    if "," not in raw and len(values) == 1:
        return name, values[0]
    return name, values


def _print_event(ev: TaskEvent) -> None:
    task = ev.task
    if ev.type == ResponseType.Progress:
        suffix = f" {task.message}" if task.message else ""
        print(f"Progress: {task.current}/{task.maximum}{suffix}", flush=True)
    elif ev.type == ResponseType.Completion:
        print("Task complete.", flush=True)
    elif ev.type == ResponseType.Cancellation:
        print("Task canceled", flush=True)
    elif ev.type == ResponseType.Failure:
        print(f"Task failed: {task.error}", file=sys.stderr, flush=True)


def _run(args: argparse.Namespace) -> int:
    config = ChannelConfig.from_env()
    if args.transport:
        config.transport = args.transport
    script = Path(args.script).read_text("utf-8")
    inputs = dict(args.input or [])

    env = resolve(args.env)
    with env.python(config) as service:
        task = service.task(script, inputs)
        task.listen(_print_event)
        if args.timeout is not None:
            status = run_with_timeout(task, args.timeout)
        else:
            task.start().wait_for()
            status = task.status
        if status == TaskStatus.Completed:
            print(json.dumps(encode_value(task.outputs), indent=2))
    return EXIT_CODES.get(status, 2)


def _build(args: argparse.Namespace) -> int:
    env = build(EnvironmentSpec(manifest=Path(args.manifest), prefix=Path(args.prefix)))
    print(env.executable)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="task-bridge")
    parser.add_argument(
        "--log-level", default=os.getenv("TASK_BRIDGE_LOG_LEVEL", "WARNING")
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run a script file in a worker")
    run.add_argument("script", help="path to the script to execute")
    run.add_argument(
        "--input",
        action="append",
        type=parse_input,
        metavar="NAME=V1,V2,...",
        help="numeric input bound as a global in the script (repeatable)",
    )
    run.add_argument(
        "--env",
        default=None,
        help="'system', an interpreter path, or a virtualenv directory",
    )
    run.add_argument("--transport", choices=TRANSPORTS, default=None)
    run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="request cancellation after this many seconds",
    )
    run.set_defaults(func=_run)

    bld = sub.add_parser("build", help="build a worker environment from a manifest")
    bld.add_argument("manifest", help="pip requirements file")
    bld.add_argument("prefix", help="directory for the virtualenv")
    bld.set_defaults(func=_build)

    args = parser.parse_args(argv)
    basicConfig(stream=sys.stderr, level=args.log_level.upper())

    try:
        return args.func(args)
    except TaskBridgeError as e:
        print(f"error: {e}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    sys.exit(main())
