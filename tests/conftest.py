import os
import tempfile
from pathlib import Path

import pytest

# must be set before mindcraft.config is imported
_DB_DIR = tempfile.mkdtemp(prefix="mindcraft-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_DB_DIR) / 'test.db'}"
os.environ.setdefault("EXECUTION_THROTTLE_SECS", "0")
os.environ.setdefault("VIOLATION_SUBMIT_DELAY_SECS", "0")

from mindcraft import auth, models  # noqa: E402
from mindcraft.db import Base, SessionLocal, engine  # noqa: E402
from mindcraft.schemas import TestCaseResult  # noqa: E402


def run_now(delay, fn):
    """Scheduler stand-in: fire forced submissions immediately."""
    fn()


class Handle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class Deferred:
    """Scheduler stand-in that keeps callbacks until flush()."""

    def __init__(self):
        self.pending = []

    def __call__(self, delay, fn):
        handle = Handle()
        self.pending.append((delay, fn, handle))
        return handle

    def flush(self):
        pending, self.pending = self.pending, []
        for _, fn, handle in pending:
            if not handle.cancelled:
                fn()


class FakeExecutor:
    """Passes a test case when the submitted code contains the expected output."""

    def __init__(self):
        self.calls = []

    def execute_test_cases(self, language, code, test_cases):
        results = []
        for stdin, expected in test_cases:
            self.calls.append((language, code, stdin))
            passed = expected in code
            results.append(TestCaseResult(
                passed=passed,
                actual_output=expected if passed else "",
                expected_output=expected,
                execution_time=1.5,
            ))
        return results


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def student(db):
    user = models.User(email="student@mindcraft.io", name="Student", hashed_password=auth.get_password_hash("secret1"))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db):
    user = models.User(
        email="admin@mindcraft.io", name="Admin",
        hashed_password=auth.get_password_hash("secret1"), is_admin=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_exam(db, questions=None, **overrides):
    fields = dict(title="Python Basics", topic="python", time_limit=30, attempt_limit=1, release_mode="auto")
    fields.update(overrides)
    exam = models.Exam(**fields)
    db.add(exam)
    db.flush()
    for position, q in enumerate(questions or []):
        db.add(models.Question(exam_id=exam.id, position=position, **q))
    db.commit()
    db.refresh(exam)
    return exam


MCQ = {
    "type": "mcq",
    "question_text": "What is 2**3?",
    "marks": 3,
    "options": ["6", "8", "9"],
    "correct_answer": "8",
}

CODING = {
    "type": "coding",
    "question_text": "Print the sum of two integers.",
    "marks": 7,
    "test_cases": [
        {"input": "1 2", "output": "3", "hidden": False},
        {"input": "2 2", "output": "4", "hidden": False},
        {"input": "5 5", "output": "10", "hidden": True},
    ],
}
