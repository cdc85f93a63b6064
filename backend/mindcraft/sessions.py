# backend/mindcraft/sessions.py
"""
In-memory exam sessions.

An ExamSession is everything a student's open exam page holds: the loaded
questions, the answer map, navigation state, the lifecycle controller, the
countdown and the proctoring monitor. The countdown and the proctoring
subscriptions are acquired on start and released together in close().
"""
import logging
import threading
import uuid
from contextlib import ExitStack
from dataclasses import dataclass
import time
from typing import Callable, Dict, List, Optional

from .config import SUBMITTED_SESSION_RETENTION_SECS
from .errors import AttemptClosed, SessionNotFound
from .exam import Answer, Question, earned_marks, persist_attempt
from .judge import ExecutionClient, check_language
from .lifecycle import AttemptController, AttemptState, Countdown, schedule_with_timer
from .loader import LoadedExam
from .proctoring import EventBus, ProctoringMonitor
from .schemas import (
    CodingAnswer, CodingAnswerIn, CodingQuestion, ExamOut, McqAnswer, McqQuestion,
    ProctorDecision, ProctorEvent, QuestionOut,
)

logger = logging.getLogger(__name__)

PENDING_REVIEW_MESSAGE = "Exam submitted successfully! Results will be released by admin."


@dataclass
class SubmissionResult:
    attempt_id: str
    score: float
    released: bool
    auto_submit: bool
    redirect: str
    message: Optional[str] = None


def student_view(question: Question) -> QuestionOut:
    if isinstance(question, McqQuestion):
        return QuestionOut(
            id=question.id,
            type=question.type,
            question_text=question.question_text,
            marks=question.marks,
            options=question.options,
        )
    return QuestionOut(
        id=question.id,
        type=question.type,
        question_text=question.question_text,
        marks=question.marks,
        title=question.title,
        input_format=question.input_format,
        output_format=question.output_format,
        constraints=question.constraints,
        examples=question.examples,
        test_cases=[tc for tc in question.test_cases if not tc.hidden],
        hidden_test_cases=sum(1 for tc in question.test_cases if tc.hidden),
    )


class ExamSession:
    def __init__(
        self,
        loaded: LoadedExam,
        student_id: str,
        session_factory: Callable,
        schedule: Callable = schedule_with_timer,
    ):
        self.id = str(uuid.uuid4())
        self.student_id = student_id
        self.exam = ExamOut.model_validate(loaded.exam)
        self.questions: List[Question] = list(loaded.questions)
        self._questions_by_id = {q.id: q for q in self.questions}
        self._session_factory = session_factory
        self._schedule = schedule

        self._lock = threading.Lock()
        self.answers: Dict[str, Answer] = {}
        self.current_index = 0
        self.visited = {0}

        self.bus = EventBus()
        self.controller = AttemptController(self._persist, schedule=self._schedule_owned)
        self.monitor = ProctoringMonitor(self.controller, self.current_question_is_coding)
        self.countdown = Countdown(loaded.time_remaining, self._on_time_up)
        self._resources = ExitStack()
        self._closed = False

    # -------------------- lifecycle --------------------

    def start(self, run_timer: bool = True):
        self.controller.begin()
        self._resources.enter_context(self.monitor.attached(self.bus))
        if run_timer:
            self.countdown.start()
        self._resources.callback(self.countdown.stop)
        self.controller.on_submitted(self.close)
        logger.info("student %s started exam %s (session %s)", self.student_id, self.exam.id, self.id)

    def _schedule_owned(self, delay: float, fn: Callable[[], None]):
        """Delayed work belongs to the session: close() cancels whatever has not run yet."""
        handle = self._schedule(delay, fn)
        cancel = getattr(handle, "cancel", None)
        if cancel is None:
            return handle
        with self._lock:
            closed = self._closed
            if not closed:
                self._resources.callback(cancel)
        if closed:
            cancel()
        return handle

    def close(self):
        """Tear down proctoring subscriptions, the countdown and pending forced submissions."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._resources.close()
        logger.info("session %s closed", self.id)

    @property
    def state(self) -> AttemptState:
        return self.controller.state

    @property
    def time_remaining(self) -> int:
        return self.countdown.remaining

    def _on_time_up(self):
        self.controller.submit_in_background(auto_submit=True)

    def submit(self, auto_submit: bool = False) -> Optional[SubmissionResult]:
        return self.controller.submit(auto_submit=auto_submit)

    def _persist(self, auto_submit: bool) -> SubmissionResult:
        with self._lock:
            answers = dict(self.answers)
        violations = self.monitor.violations

        db = self._session_factory()
        try:
            attempt = persist_attempt(db, self.exam, self.student_id, self.questions, answers, violations)
            attempt_id, score, released = attempt.id, attempt.score, attempt.released
        finally:
            db.close()

        if auto_submit:
            logger.warning("session %s auto-submitted as attempt %s", self.id, attempt_id)
        if released:
            return SubmissionResult(attempt_id, score, released, auto_submit,
                                    redirect=f"/exams/{self.exam.id}/results/{attempt_id}")
        return SubmissionResult(attempt_id, score, released, auto_submit,
                                redirect="/dashboard", message=PENDING_REVIEW_MESSAGE)

    # -------------------- navigation & answers --------------------

    def question(self, question_id: str) -> Question:
        try:
            return self._questions_by_id[question_id]
        except KeyError:
            raise SessionNotFound(f"Question {question_id} is not part of this exam")

    def current_question_is_coding(self) -> bool:
        if not self.questions:
            return False
        return isinstance(self.questions[self.current_index], CodingQuestion)

    def _require_in_progress(self):
        if not self.controller.in_progress:
            raise AttemptClosed("This exam has already been submitted")
        if self.countdown.expired:
            # a failed time-up submission leaves the attempt open for a retried submit only
            raise AttemptClosed("Time is up, answers can no longer be changed")

    def navigate(self, index: int):
        self._require_in_progress()
        if not 0 <= index < len(self.questions):
            raise IndexError(f"Question index {index} out of range")
        with self._lock:
            self.current_index = index
            self.visited.add(index)

    def set_answer(self, question_id: str, answer) -> Answer:
        self._require_in_progress()
        question = self.question(question_id)

        if isinstance(question, McqQuestion):
            if not isinstance(answer, McqAnswer):
                raise ValueError("Multiple-choice questions take an option as answer")
            if answer.answer not in question.options:
                raise ValueError("Answer must be one of the options")
            record = answer
        else:
            if not isinstance(answer, CodingAnswerIn):
                raise ValueError("Coding questions take code as answer")
            check_language(answer.language)
            with self._lock:
                previous = self.answers.get(question_id)
            if isinstance(previous, CodingAnswer) and previous.language == answer.language:
                record = previous.model_copy(update={"code": answer.code})
            else:
                # language switch drops earlier run results
                record = CodingAnswer(code=answer.code, language=answer.language)

        with self._lock:
            self._require_in_progress()
            self.answers[question_id] = record
            self.visited.add(self.questions.index(question))
        return record

    def run_code(self, question_id: str, code: str, language: str, executor: ExecutionClient) -> CodingAnswer:
        """Practice run against every test case of a coding question, hidden ones included."""
        self._require_in_progress()
        question = self.question(question_id)
        if not isinstance(question, CodingQuestion):
            raise ValueError("Only coding questions can be run")
        if not question.test_cases:
            raise ValueError("No test cases available")
        check_language(language)

        results = executor.execute_test_cases(
            language, code, [(tc.input, tc.output) for tc in question.test_cases]
        )
        passed = sum(1 for r in results if r.passed)
        record = CodingAnswer(
            code=code,
            language=language,
            test_results=results,
            has_run=True,
            score=(passed / len(results)) * question.marks,
        )

        with self._lock:
            self._require_in_progress()
            self.answers[question_id] = record
            self.visited.add(self.questions.index(question))
        return record

    def question_status(self, index: int) -> str:
        if index == self.current_index:
            return "current"
        answer = self.answers.get(self.questions[index].id)
        if isinstance(answer, McqAnswer) and answer.answer:
            return "answered"
        if isinstance(answer, CodingAnswer) and answer.has_run:
            return "answered"
        if index in self.visited:
            return "visited"
        return "unvisited"

    def earned(self, question_id: str) -> float:
        return earned_marks(self.question(question_id), self.answers.get(question_id))

    # -------------------- proctoring --------------------

    def dispatch(self, event: ProctorEvent) -> ProctorDecision:
        decision = self.bus.dispatch(event)
        decision.violation_count = self.monitor.count
        decision.fullscreen = self.monitor.fullscreen
        return decision


class SessionRegistry:
    """Open exam sessions, keyed by session id."""

    def __init__(
        self,
        session_factory: Callable,
        schedule: Callable = schedule_with_timer,
        run_timers: bool = True,
        retention: float = SUBMITTED_SESSION_RETENTION_SECS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._schedule = schedule
        self._run_timers = run_timers
        self._retention = retention  # seconds a submitted session stays readable
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, ExamSession] = {}
        self._submitted_at: Dict[str, float] = {}

    def _running(self, exam_id: str, student_id: str) -> Optional[ExamSession]:
        for s in self._sessions.values():
            if s.student_id == student_id and s.exam.id == exam_id and s.state != AttemptState.submitted:
                return s
        return None

    def _prune(self):
        now = self._clock()
        expired = [
            sid for sid, s in self._sessions.items()
            if sid in self._submitted_at and now - self._submitted_at[sid] >= self._retention
        ]
        for sid in expired:
            del self._submitted_at[sid]
            self._sessions.pop(sid).close()
        if expired:
            logger.info("dropped %s submitted sessions", len(expired))

    def _mark_submitted(self, session_id: str):
        with self._lock:
            if session_id in self._sessions:
                self._submitted_at[session_id] = self._clock()

    def open(self, loaded: LoadedExam, student_id: str) -> ExamSession:
        with self._lock:
            self._prune()
            # a page reload re-enters the running session instead of starting another one
            running = self._running(loaded.exam.id, student_id)
            if running:
                return running
            session = ExamSession(loaded, student_id, self._session_factory, schedule=self._schedule)
            session.start(run_timer=self._run_timers)
            session.controller.on_submitted(lambda: self._mark_submitted(session.id))
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str, student_id: str) -> ExamSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.student_id != student_id:
            raise SessionNotFound("Exam session not found")
        return session

    def close(self, session_id: str, student_id: str):
        session = self.get(session_id, student_id)
        with self._lock:
            self._sessions.pop(session_id, None)
            self._submitted_at.pop(session_id, None)
        session.close()

    def close_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._submitted_at.clear()
        for s in sessions:
            s.close()

    def __len__(self):
        with self._lock:
            return len(self._sessions)
