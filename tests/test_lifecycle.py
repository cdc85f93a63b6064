import threading

import pytest

from mindcraft.errors import SubmissionFailed
from mindcraft.lifecycle import AttemptController, AttemptState, Countdown, format_time

from conftest import Deferred


class Recorder:
    def __init__(self, fail_times=0, gate=None):
        self.calls = []
        self.fail_times = fail_times
        self.gate = gate

    def __call__(self, auto_submit):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.calls.append(auto_submit)
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("database is down")
        return {"attempt": len(self.calls)}


def started(submit_fn, schedule=None):
    controller = AttemptController(submit_fn, schedule=schedule or Deferred())
    controller.begin()
    return controller


def test_submit_runs_once():
    persist = Recorder()
    controller = started(persist)

    assert controller.submit() == {"attempt": 1}
    assert controller.submit() is None
    assert controller.submit(auto_submit=True) is None
    assert persist.calls == [False]
    assert controller.state == AttemptState.submitted


def test_cannot_submit_before_begin():
    persist = Recorder()
    controller = AttemptController(persist)
    assert controller.submit() is None
    assert persist.calls == []


def test_concurrent_triggers_persist_once():
    gate = threading.Event()
    persist = Recorder(gate=gate)
    controller = started(persist)

    threads = [threading.Thread(target=controller.submit_in_background) for _ in range(5)]
    for t in threads:
        t.start()
    gate.set()
    for t in threads:
        t.join(timeout=5)

    assert len(persist.calls) == 1
    assert controller.state == AttemptState.submitted


def test_failed_submit_can_be_retried():
    persist = Recorder(fail_times=1)
    controller = started(persist)

    with pytest.raises(SubmissionFailed):
        controller.submit()
    assert controller.state == AttemptState.in_progress
    assert controller.last_error == "database is down"

    assert controller.submit() == {"attempt": 2}
    assert controller.last_error is None
    assert controller.state == AttemptState.submitted


def test_submitted_callbacks_run_after_success():
    closed = []
    controller = started(Recorder())
    controller.on_submitted(lambda: closed.append(True))
    controller.submit()
    controller.submit()
    assert closed == [True]


def test_submit_later_uses_scheduler():
    schedule = Deferred()
    persist = Recorder()
    controller = started(persist, schedule)

    controller.submit_later(1.0)
    assert persist.calls == []
    assert schedule.pending[0][0] == 1.0

    schedule.flush()
    assert persist.calls == [True]


def test_countdown_expires_once():
    fired = []
    countdown = Countdown(2, lambda: fired.append(True))

    assert countdown.tick() == 1
    assert countdown.tick() == 0
    assert countdown.tick() == 0
    assert fired == [True]
    assert countdown.expired


def test_stopped_countdown_does_not_fire():
    fired = []
    countdown = Countdown(1, lambda: fired.append(True))
    countdown.stop()
    assert countdown.tick() == 1
    assert fired == []


def test_countdown_thread_triggers_submission():
    done = threading.Event()
    countdown = Countdown(1, done.set, interval=0.01)
    countdown.start()
    assert done.wait(timeout=5)


@pytest.mark.parametrize("seconds, expected", [(0, "00:00"), (59, "00:59"), (61, "01:01"), (1800, "30:00"), (-3, "00:00")])
def test_format_time(seconds, expected):
    assert format_time(seconds) == expected
