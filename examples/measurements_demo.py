from __future__ import annotations

import argparse

import numpy as np

from task_bridge.runtime import ResponseType, TaskEvent, resolve, run_with_timeout

SCRIPT = """
import numpy as np

names = sorted(measurements)
data = np.column_stack([np.asarray(measurements[n], dtype=float) for n in names])
normalized = (data - data.mean(axis=0)) / data.std(axis=0)

for i in range(len(names)):
    if task.cancel_requested:
        task.cancel()
        break
    task.update(f"column {names[i]}", current=i + 1, maximum=len(names))

task.outputs["normalized"] = normalized
task.outputs["labels"] = (normalized[:, 0] > 0).astype(np.int64)
"""


def on_event(ev: TaskEvent) -> None:
    task = ev.task
    if ev.type == ResponseType.Progress:
        print(f"Progress: {task.current}/{task.maximum}")
    elif ev.type == ResponseType.Completion:
        print("Task complete. Printing the output now...")
        print(task.outputs["normalized"])
        print(task.outputs["labels"])
    elif ev.type == ResponseType.Cancellation:
        print("Task canceled")
    elif ev.type == ResponseType.Failure:
        print(f"Task failed: {task.error}")


def main():
    parser = argparse.ArgumentParser()

    parser.add_argument(
        "--env",
        default=None,
        help="worker environment (default: this interpreter)",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="cancel the task if it runs longer than this",
    )

    args = parser.parse_args()

    rng = np.random.default_rng(0)
    measurements = {
        "Nucleus: Area mean": rng.normal(40.0, 5.0, 200),
        "Nucleus: Hematoxylin OD mean": rng.normal(0.6, 0.1, 200),
        "Cell: Eosin OD mean": rng.normal(0.3, 0.05, 200),
    }

    env = resolve(args.env)
    with env.python() as python:
        task = python.task(SCRIPT, {"measurements": measurements})
        task.listen(on_event)
        run_with_timeout(task, args.timeout)


if __name__ == "__main__":
    main()
