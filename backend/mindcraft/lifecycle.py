# backend/mindcraft/lifecycle.py
"""
Attempt lifecycle: loading -> in_progress -> submitting -> submitted.

Three independent triggers (countdown expiry, the proctoring violation cap and
the student's submit button) all go through AttemptController.submit. The
in_progress -> submitting transition is claimed under a lock before any slow
work starts, so only the first trigger reaches the scoring/write path.
"""
import enum
import logging
import threading
from typing import Any, Callable, List, Optional

from .errors import SubmissionFailed

logger = logging.getLogger(__name__)


class AttemptState(str, enum.Enum):
    loading = "loading"
    in_progress = "in_progress"
    submitting = "submitting"
    submitted = "submitted"


def schedule_with_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


class AttemptController:
    def __init__(self, submit_fn: Callable[[bool], Any], schedule: Callable = schedule_with_timer):
        self._submit_fn = submit_fn
        self._schedule = schedule
        self._lock = threading.Lock()
        self._state = AttemptState.loading
        self._on_submitted: List[Callable[[], None]] = []
        self.result: Any = None
        self.last_error: Optional[str] = None

    @property
    def state(self) -> AttemptState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state == AttemptState.in_progress

    def begin(self):
        with self._lock:
            if self._state != AttemptState.loading:
                raise RuntimeError(f"cannot start an attempt that is {self._state.value}")
            self._state = AttemptState.in_progress

    def on_submitted(self, callback: Callable[[], None]):
        self._on_submitted.append(callback)

    def _claim(self) -> bool:
        with self._lock:
            if self._state != AttemptState.in_progress:
                return False
            self._state = AttemptState.submitting
            return True

    def submit(self, auto_submit: bool = False):
        """
        Run the submission exactly once. Returns the submit_fn result, or None
        when another trigger already claimed the submission. A failed write
        puts the attempt back in progress so it can be retried.
        """
        if not self._claim():
            logger.debug("submit ignored, attempt is %s", self._state.value)
            return None

        try:
            result = self._submit_fn(auto_submit)
        except Exception as exc:
            with self._lock:
                self._state = AttemptState.in_progress
                self.last_error = str(exc) or exc.__class__.__name__
            logger.exception("submission failed (auto_submit=%s)", auto_submit)
            raise SubmissionFailed(self.last_error) from exc

        with self._lock:
            self.result = result
            self.last_error = None
            self._state = AttemptState.submitted
        for callback in self._on_submitted:
            callback()
        return result

    def submit_in_background(self, auto_submit: bool = True):
        """Entry point for timer threads; failures are kept on last_error."""
        try:
            self.submit(auto_submit=auto_submit)
        except SubmissionFailed:
            pass  # already logged, surfaced through last_error

    def submit_later(self, delay: float, auto_submit: bool = True):
        return self._schedule(delay, lambda: self.submit_in_background(auto_submit))


class Countdown:
    """One-second countdown that calls on_expire once when it reaches zero."""

    def __init__(self, seconds: int, on_expire: Callable[[], None], interval: float = 1.0):
        self._remaining = max(0, int(seconds))
        self._on_expire = on_expire
        self._interval = interval
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._expired = False
        self._thread: Optional[threading.Thread] = None

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def expired(self) -> bool:
        return self._expired

    def tick(self) -> int:
        fire = False
        with self._lock:
            if self._remaining > 0 and not self._stopped.is_set():
                self._remaining -= 1
                if self._remaining == 0 and not self._expired:
                    self._expired = fire = True
            remaining = self._remaining
        if fire:
            logger.warning("time is up, auto-submitting")
            self._on_expire()
        return remaining

    def _run(self):
        while not self._stopped.wait(self._interval):
            if self.tick() == 0:
                break

    def start(self):
        if self._thread is None and self._remaining > 0:
            self._thread = threading.Thread(target=self._run, name="exam-countdown", daemon=True)
            self._thread.start()

    def stop(self):
        self._stopped.set()


def format_time(seconds: int) -> str:
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins:02d}:{secs:02d}"
