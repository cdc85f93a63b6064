"""Exceptions raised by the exam attempt engine.

Routes in ``main`` translate these into HTTP errors; the engine itself never
imports FastAPI.
"""


class ExamDenied(Exception):
    """The student may not enter the exam right now."""

    def __init__(self, code: str, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason


class SessionNotFound(Exception):
    pass


class UnsupportedLanguage(ValueError):
    def __init__(self, language: str, supported):
        super().__init__(
            f"Unsupported language: {language}. Supported: {', '.join(supported)}"
        )
        self.language = language


class ExecutionError(Exception):
    """The remote execution service could not run a program."""


class SubmissionFailed(Exception):
    """The attempt could not be persisted; the session stays open for a retry."""


class AttemptClosed(Exception):
    """The attempt is no longer in progress; answers are frozen."""
