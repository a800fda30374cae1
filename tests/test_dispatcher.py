import dataclasses
import threading
import time

import pytest

from ct2aria_core import (
    Dispatcher,
    EmptyResultError,
    EventLog,
    RemoteFile,
    SubmissionError,
    Task,
    TaskFailed,
)
from fakes import FakeEngine, resolve_ok


def _task(name, prefix="share", *hooks):
    return Task(RemoteFile(id=name, name=name, size="1 KB"), prefix, *hooks)


def _wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def make_dispatcher(fast_config):
    created = []

    def factory(engine, resolve=resolve_ok, config=fast_config):
        dispatcher = Dispatcher(config, resolve, engine)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.stop()
        try:
            dispatcher.wait()
        except SubmissionError:
            pass


def test_completed_job_finalizes_without_error(make_dispatcher):
    engine = FakeEngine()
    dispatcher = make_dispatcher(engine)
    dispatcher.start()
    task = _task("a.bin")

    assert dispatcher.enqueue(task)
    assert task.wait(3)
    assert task.error is None
    assert task.job_id == "gid-1"
    uris, options = engine.submissions[0]
    assert uris == ["https://mirror.example/a.bin"]
    assert options == {"out": "share/a.bin", "dir": "/downloads"}
    assert dispatcher.get_stats()["completed"] == 1


def test_engine_error_becomes_task_error(make_dispatcher):
    dispatcher = make_dispatcher(FakeEngine(outcomes={"b.bin": ["error"]}))
    dispatcher.start()
    task = _task("b.bin")

    dispatcher.enqueue(task)
    assert task.wait(3)
    assert isinstance(task.error, TaskFailed)
    assert str(task.error) == "resource not found"


def test_unknown_job_is_treated_as_removed_not_failed(make_dispatcher):
    dispatcher = make_dispatcher(FakeEngine(outcomes={"c.bin": ["unknown"]}))
    dispatcher.start()
    task = _task("c.bin")

    dispatcher.enqueue(task)
    assert task.wait(3)
    assert task.error is None
    stats = dispatcher.get_stats()
    assert stats["removed"] == 1
    assert stats["failed"] == 0


def test_exhausted_resolution_finalizes_task_and_skips_submission(make_dispatcher):
    engine = FakeEngine()
    calls = []

    def resolve_empty(file):
        calls.append(file.name)
        return {}

    dispatcher = make_dispatcher(engine, resolve=resolve_empty)
    dispatcher.start()
    task = _task("d.bin")

    dispatcher.enqueue(task)
    assert task.wait(3)
    assert isinstance(task.error, EmptyResultError)
    assert len(calls) == dispatcher.config.resolve_attempts
    assert engine.submissions == []
    assert dispatcher.get_stats()["resolve_failures"] == 1


def test_submission_failure_is_fatal(make_dispatcher):
    dispatcher = make_dispatcher(FakeEngine(fail_submit=True))
    dispatcher.start()
    task = _task("e.bin")

    dispatcher.enqueue(task)
    assert dispatcher.stop_event.wait(3)
    with pytest.raises(SubmissionError):
        dispatcher.wait()
    assert not task.is_done
    assert dispatcher.enqueue(_task("f.bin")) is False


def test_in_flight_tasks_are_bounded_by_queue_plus_workers(make_dispatcher, fast_config):
    engine = FakeEngine(outcomes={f"{i}.bin": ["hold"] for i in range(10)})
    dispatcher = make_dispatcher(engine)
    dispatcher.start()
    enqueued = []

    def produce():
        for i in range(10):
            task = _task(f"{i}.bin")
            if not dispatcher.enqueue(task):
                return
            enqueued.append(task)

    producer = threading.Thread(target=produce)
    producer.start()

    bound = fast_config.concurrency + fast_config.worker_count
    assert _wait_until(lambda: len(enqueued) == bound)
    time.sleep(0.2)
    assert len(enqueued) == bound
    assert not any(task.is_done for task in enqueued)

    dispatcher.stop()
    producer.join(3)
    assert not producer.is_alive()
    assert len(enqueued) == bound


def test_enqueue_gives_up_when_abort_reports_pending(make_dispatcher, fast_config):
    dispatcher = make_dispatcher(FakeEngine())
    # workers not started: the queue fills up
    for i in range(fast_config.concurrency):
        assert dispatcher.enqueue(_task(f"{i}.bin"))

    aborts = []
    started = time.monotonic()
    assert dispatcher.enqueue(_task("late.bin"), abort=lambda: aborts.append(1) or True) is False
    assert aborts == [1]
    assert time.monotonic() - started < 1.0


def test_stop_leaves_polled_task_pending(make_dispatcher):
    engine = FakeEngine(outcomes={"slow.bin": ["hold"]})
    dispatcher = make_dispatcher(engine)
    dispatcher.start()
    task = _task("slow.bin")

    dispatcher.enqueue(task)
    assert _wait_until(lambda: task.job_id is not None)
    dispatcher.shutdown()

    assert not task.is_done
    assert task.error is None


def test_join_waits_for_every_task(make_dispatcher):
    dispatcher = make_dispatcher(FakeEngine())
    dispatcher.start()
    tasks = [_task(f"{i}.bin") for i in range(5)]
    for task in tasks:
        dispatcher.enqueue(task)

    assert dispatcher.join(timeout=5)
    assert all(task.is_done for task in tasks)


class ExplodingLog(EventLog):
    """Event sink that raises while logging one particular file."""

    def __init__(self, name):
        super().__init__()
        self.name = name

    def log(self, message, level="info"):
        if message.startswith("File: ") and self.name in message:
            raise RuntimeError("sink exploded")
        super().log(message, level)


def test_unexpected_worker_error_fails_the_task_and_keeps_the_worker(fast_config):
    config = dataclasses.replace(fast_config, concurrency=1)
    event_log = ExplodingLog("bad.bin")
    dispatcher = Dispatcher(config, resolve_ok, FakeEngine(), event_log=event_log)
    dispatcher.start()
    try:
        bad, good = _task("bad.bin"), _task("good.bin")
        assert dispatcher.enqueue(bad)
        assert dispatcher.enqueue(good)

        assert bad.wait(3) and good.wait(3)
        assert isinstance(bad.error, RuntimeError)
        assert good.error is None
        assert dispatcher.join(timeout=3)
        assert dispatcher.get_stats()["failed"] == 1
        logs, _ = event_log.get_logs()
        assert any("Worker error: sink exploded" in line for line in logs)
    finally:
        dispatcher.shutdown()


def test_event_log_survives_unencodable_file_writes(tmp_path):
    event_log = EventLog(log_file=str(tmp_path / "debug.log"))

    event_log.log("File: share/\ud800.bin")
    event_log.log("next")

    lines, index = event_log.get_logs()
    assert index == 2
    assert lines[-1].endswith("next")
