import threading
import time

import pytest

from mindcraft import loader, models, schemas, sessions
from mindcraft.db import SessionLocal
from mindcraft.errors import AttemptClosed, SessionNotFound
from mindcraft.lifecycle import AttemptState
from mindcraft.sessions import ExamSession, SessionRegistry

from conftest import CODING, MCQ, Deferred, FakeExecutor, make_exam, run_now


@pytest.fixture
def session(db, student):
    exam = make_exam(db, [MCQ, CODING], time_limit=1)
    s = ExamSession(loader.load_exam(db, exam.id, student.id), student.id, SessionLocal, schedule=run_now)
    s.start(run_timer=False)
    yield s
    s.close()


def coding_id(s):
    return s.questions[1].id


def test_start_subscribes_and_close_releases(session):
    assert session.state == AttemptState.in_progress
    assert session.bus.subscriber_count() == 7

    session.close()
    session.close()
    assert session.bus.subscriber_count() == 0


def test_time_up_submits(session, db):
    for _ in range(59):
        session.countdown.tick()
    assert session.state == AttemptState.in_progress

    session.countdown.tick()
    assert session.state == AttemptState.submitted
    assert session.controller.result.auto_submit is True
    assert db.query(models.Attempt).count() == 1
    assert session.bus.subscriber_count() == 0


def test_editing_code_keeps_results_for_same_language(session):
    qid = coding_id(session)
    session.run_code(qid, "print(3)", "python", FakeExecutor())

    record = session.set_answer(qid, schemas.CodingAnswerIn(code="print(3)\n", language="python"))
    assert record.has_run
    assert len(record.test_results) == 3

    record = session.set_answer(qid, schemas.CodingAnswerIn(code="console.log(3)", language="javascript"))
    assert not record.has_run
    assert record.test_results == []


def test_clipboard_only_blocked_on_coding_question(session):
    paste = schemas.ProctorEvent(type="paste", active_element="TEXTAREA")
    assert not session.dispatch(paste).prevent_default

    session.navigate(1)
    decision = session.dispatch(paste)
    assert decision.prevent_default
    assert decision.violation_count == 1


def test_answers_frozen_after_submit(session):
    session.submit()
    with pytest.raises(AttemptClosed):
        session.set_answer(session.questions[0].id, schemas.McqAnswer(answer="8"))
    with pytest.raises(AttemptClosed):
        session.navigate(1)


def test_question_status(session):
    assert session.question_status(0) == "current"
    assert session.question_status(1) == "unvisited"
    session.navigate(1)
    assert session.question_status(0) == "visited"
    session.set_answer(session.questions[0].id, schemas.McqAnswer(answer="6"))
    assert session.question_status(0) == "answered"


def test_registry_close_all(db, student):
    exam = make_exam(db, [MCQ])
    registry = SessionRegistry(SessionLocal, schedule=run_now, run_timers=False)
    s = registry.open(loader.load_exam(db, exam.id, student.id), student.id)
    assert len(registry) == 1

    registry.close_all()
    assert len(registry) == 0
    assert s.bus.subscriber_count() == 0


def fail_once(monkeypatch):
    real = sessions.persist_attempt
    calls = []

    def flaky(*args, **kwargs):
        calls.append(True)
        if len(calls) == 1:
            raise RuntimeError("lost connection to MySQL server")
        return real(*args, **kwargs)

    monkeypatch.setattr(sessions, "persist_attempt", flaky)


def test_failed_time_up_submission_freezes_answers(session, db, monkeypatch):
    fail_once(monkeypatch)
    for _ in range(60):
        session.countdown.tick()

    assert session.state == AttemptState.in_progress
    assert session.controller.last_error == "lost connection to MySQL server"
    with pytest.raises(AttemptClosed):
        session.set_answer(session.questions[0].id, schemas.McqAnswer(answer="8"))
    with pytest.raises(AttemptClosed):
        session.run_code(coding_id(session), "print(3)", "python", FakeExecutor())

    assert session.submit() is not None
    assert db.query(models.Attempt).count() == 1


def test_leaving_cancels_pending_forced_submission(db, student):
    exam = make_exam(db, [MCQ])
    schedule = Deferred()
    registry = SessionRegistry(SessionLocal, schedule=schedule, run_timers=False)
    s = registry.open(loader.load_exam(db, exam.id, student.id), student.id)

    for _ in range(4):
        s.dispatch(schemas.ProctorEvent(type="visibilitychange", hidden=True))
    assert len(schedule.pending) == 1

    registry.close(s.id, student.id)
    schedule.flush()

    assert db.query(models.Attempt).count() == 0
    assert s.state == AttemptState.in_progress


def test_concurrent_opens_share_one_session(db, student, monkeypatch):
    exam = make_exam(db, [MCQ])
    registry = SessionRegistry(SessionLocal, schedule=run_now, run_timers=False)
    loaded = [loader.load_exam(db, exam.id, student.id) for _ in range(2)]

    real_start = ExamSession.start

    def slow_start(self, run_timer=True):
        time.sleep(0.1)
        real_start(self, run_timer=run_timer)

    monkeypatch.setattr(ExamSession, "start", slow_start)

    barrier = threading.Barrier(2)
    opened = []

    def open_exam(l):
        barrier.wait()
        opened.append(registry.open(l, student.id))

    threads = [threading.Thread(target=open_exam, args=(l,)) for l in loaded]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(opened) == 2
    assert opened[0] is opened[1]
    assert len(registry) == 1

    for s in opened:
        s.submit()
    assert db.query(models.Attempt).count() == 1
    registry.close_all()


def test_submitted_sessions_are_dropped_after_retention(db, student):
    exam = make_exam(db, [MCQ], attempt_limit=5)
    now = [0.0]
    registry = SessionRegistry(SessionLocal, schedule=run_now, run_timers=False, retention=60, clock=lambda: now[0])

    first = registry.open(loader.load_exam(db, exam.id, student.id), student.id)
    first.submit()
    assert registry.get(first.id, student.id) is first

    for _ in range(2):
        now[0] += 61
        registry.open(loader.load_exam(db, exam.id, student.id), student.id).submit()

    assert len(registry) == 1
    with pytest.raises(SessionNotFound):
        registry.get(first.id, student.id)
