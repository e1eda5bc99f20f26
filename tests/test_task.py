from __future__ import annotations

import threading
import time
from typing import List

import numpy as np
import pytest

from task_bridge.runtime.errors import (
    AlreadyStartedError,
    TransportError,
    WorkerReportedError,
)
from task_bridge.runtime.types import (
    Cancel,
    Cancellation,
    Completion,
    Failure,
    Launch,
    Progress,
    ResponseType,
    Submit,
    TaskEvent,
    TaskStatus,
    WaitOutcome,
)


def test_start_sends_submit(recording_service) -> None:
    task = recording_service.task("y = sum(x)", {"x": [1.0, 2.0, 3.0]})
    assert task.status == TaskStatus.Queued
    assert task.start() is task
    assert task.status == TaskStatus.Running
    assert recording_service.sent == [
        Submit(task.task_id, "y = sum(x)", {"x": [1.0, 2.0, 3.0]})
    ]


def test_start_twice_raises(recording_service) -> None:
    task = recording_service.task("pass").start()
    with pytest.raises(AlreadyStartedError):
        task.start()
    assert len(recording_service.sent) == 1


def test_completion(recording_service) -> None:
    task = recording_service.task("pass").start()
    events: List[TaskEvent] = []
    task.listen(events.append)

    recording_service._dispatch(Launch(task.task_id))
    recording_service._dispatch(Completion(task.task_id, {"y": 6.0}))

    assert task.status == TaskStatus.Completed
    assert task.outputs == {"y": 6.0}
    assert task.error is None
    assert [e.type for e in events] == [ResponseType.Launch, ResponseType.Completion]
    assert task.wait_for(0) is WaitOutcome.Terminal
    assert recording_service.tasks == []


def test_failure(recording_service) -> None:
    task = recording_service.task("raise ValueError()").start()
    recording_service._dispatch(Failure(task.task_id, "ValueError: nope"))

    assert task.status == TaskStatus.Failed
    assert task.error == "ValueError: nope"
    assert task.outputs == {}
    with pytest.raises(WorkerReportedError) as info:
        task.raise_for_status()
    assert info.value.error == "ValueError: nope"


def test_failure_without_description_gets_one(recording_service) -> None:
    task = recording_service.task("pass").start()
    recording_service._dispatch(Failure(task.task_id, ""))
    assert task.status == TaskStatus.Failed
    assert task.error


def test_progress_is_monotonic_and_bounded(recording_service) -> None:
    task = recording_service.task("pass").start()
    seen = []
    task.listen(lambda ev: seen.append((ev.task.current, ev.task.maximum)))

    for current, maximum in [(1, 10), (5, 10), (3, 10), (7, 0), (12, 10)]:
        recording_service._dispatch(Progress(task.task_id, current, maximum))

    assert task.status == TaskStatus.Running
    assert seen == [(1, 10), (5, 10), (5, 10), (7, 10), (12, 12)]
    currents = [c for c, _ in seen]
    assert currents == sorted(currents)
    assert all(c <= m for c, m in seen if m > 0)


def test_progress_message_is_kept(recording_service) -> None:
    task = recording_service.task("pass").start()
    recording_service._dispatch(Progress(task.task_id, 1, 2, "loading"))
    recording_service._dispatch(Progress(task.task_id, 2, 2))
    assert task.message == "loading"


def test_messages_before_start_are_ignored(recording_service) -> None:
    task = recording_service.task("pass")
    recording_service._dispatch(Completion(task.task_id, {"y": 1}))
    assert task.status == TaskStatus.Queued
    assert task.outputs == {}


def test_first_terminal_message_wins(recording_service) -> None:
    task = recording_service.task("pass").start()
    task.cancel()
    recording_service._dispatch(Completion(task.task_id, {"y": 1}))
    recording_service._dispatch(Cancellation(task.task_id))
    recording_service._dispatch(Failure(task.task_id, "late"))

    assert task.status == TaskStatus.Completed
    assert task.error is None
    assert task.outputs == {"y": 1}


def test_cancel_running_waits_for_acknowledgement(recording_service) -> None:
    task = recording_service.task("pass").start()
    task.cancel()
    task.cancel()
    assert task.status == TaskStatus.Running
    assert task.cancel_requested
    assert recording_service.sent[1:] == [Cancel(task.task_id)]

    recording_service._dispatch(Cancellation(task.task_id))
    assert task.status == TaskStatus.Canceled
    assert task.outputs == {} and task.error is None


def test_cancel_queued_is_local(recording_service) -> None:
    task = recording_service.task("pass")
    events: List[TaskEvent] = []
    task.listen(events.append)

    task.cancel()

    assert task.status == TaskStatus.Canceled
    assert recording_service.sent == []
    assert [e.type for e in events] == [ResponseType.Cancellation]
    with pytest.raises(AlreadyStartedError):
        task.start()


def test_cancel_finished_is_noop(recording_service) -> None:
    task = recording_service.task("pass").start()
    recording_service._dispatch(Completion(task.task_id, {"y": 1}))
    task.cancel()
    assert recording_service.sent == [Submit(task.task_id, "pass", {})]


def test_wait_for_times_out(recording_service) -> None:
    task = recording_service.task("pass").start()
    t0 = time.monotonic()
    assert task.wait_for(0.1) is WaitOutcome.TimedOut
    assert time.monotonic() - t0 >= 0.09


def test_wait_for_wakes_on_reader_thread(recording_service) -> None:
    task = recording_service.task("pass").start()

    def finish() -> None:
        time.sleep(0.05)
        recording_service._dispatch(Completion(task.task_id, {"y": 2}))

    th = threading.Thread(target=finish)
    th.start()
    try:
        assert task.wait_for(5.0) is WaitOutcome.Terminal
        assert task.outputs == {"y": 2}
    finally:
        th.join()


def test_listener_errors_do_not_stop_delivery(recording_service) -> None:
    task = recording_service.task("pass").start()
    seen: List[ResponseType] = []

    def broken(ev: TaskEvent) -> None:
        raise RuntimeError("listener bug")

    task.listen(broken)
    task.listen(lambda ev: seen.append(ev.type))
    recording_service._dispatch(Progress(task.task_id, 1, 2))
    recording_service._dispatch(Completion(task.task_id, {"y": 1}))
    assert seen == [ResponseType.Progress, ResponseType.Completion]


def test_interleaved_progress_stays_per_task(recording_service) -> None:
    a = recording_service.task("pass").start()
    b = recording_service.task("pass").start()
    assert a.task_id != b.task_id

    recording_service._dispatch(Progress(a.task_id, 1, 4))
    recording_service._dispatch(Progress(b.task_id, 10, 20))
    recording_service._dispatch(Progress(a.task_id, 2, 4))
    recording_service._dispatch(Progress(b.task_id, 15, 20))
    recording_service._dispatch(Completion(b.task_id, {"who": "b"}))
    recording_service._dispatch(Progress(a.task_id, 3, 4))

    assert (a.current, a.maximum) == (3, 4)
    assert (b.current, b.maximum) == (15, 20)
    assert a.status == TaskStatus.Running
    assert b.outputs == {"who": "b"} and a.outputs == {}


def test_task_ids_unique_across_threads(recording_service) -> None:
    ids: List[str] = []
    lock = threading.Lock()

    def make() -> None:
        for _ in range(200):
            t = recording_service.task("pass")
            with lock:
                ids.append(t.task_id)

    threads = [threading.Thread(target=make) for _ in range(8)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()
    assert len(ids) == len(set(ids)) == 1600


def test_transport_fault_fails_running_tasks(recording_service) -> None:
    running = recording_service.task("pass").start()
    queued = recording_service.task("pass")

    recording_service._on_fault(TransportError("pipe broke"))

    assert running.status == TaskStatus.Failed
    assert "pipe broke" in running.error
    with pytest.raises(TransportError):
        running.raise_for_status()
    assert queued.status == TaskStatus.Queued


def test_close_cancels_unfinished_tasks(recording_service) -> None:
    running = recording_service.task("pass").start()
    queued = recording_service.task("pass")
    done = recording_service.task("pass").start()
    recording_service._dispatch(Completion(done.task_id, {"y": 1}))

    recording_service.close()

    assert running.status == TaskStatus.Canceled
    assert running.error is None
    assert queued.status == TaskStatus.Canceled
    assert done.status == TaskStatus.Completed
    with pytest.raises(TransportError):
        recording_service.task("pass")


def test_task_rejects_bad_inputs(recording_service) -> None:
    with pytest.raises(ValueError):
        recording_service.task("pass", {"x": ["a", "b"]})
    with pytest.raises(ValueError):
        recording_service.task("pass", {"c": np.complex128(1 + 2j)})
    assert recording_service.tasks == []


def test_start_that_cannot_submit_fails_task(recording_service, monkeypatch) -> None:
    task = recording_service.task("pass")

    def broken_send(msg) -> None:
        raise TypeError("Object of type complex is not JSON serializable")

    monkeypatch.setattr(recording_service, "_send", broken_send)
    with pytest.raises(TypeError):
        task.start()
    assert task.status == TaskStatus.Failed
    assert "cannot submit task" in task.error
    assert task.wait_for(0.1) is WaitOutcome.Terminal
