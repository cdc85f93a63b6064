# backend/mindcraft/loader.py
"""Eligibility checks and loading of an exam before a student may enter it."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from . import models
from .errors import ExamDenied
from .schemas import CodingQuestion, McqQuestion, question_from_row

logger = logging.getLogger(__name__)

NOT_YET_AVAILABLE = "This exam is not yet available. Please check the scheduled start time."
PERIOD_ENDED = "This exam is no longer available. The exam period has ended."
ATTEMPT_LIMIT_REACHED = "You have reached the maximum attempts for this exam."


@dataclass
class LoadedExam:
    exam: models.Exam
    questions: List[Union[McqQuestion, CodingQuestion]]
    time_remaining: int  # seconds
    attempts_taken: int
    effective_limit: int


def utc(value: Optional[datetime]) -> Optional[datetime]:
    # naive timestamps (e.g. from SQLite) are stored as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def schedule_denial(exam: models.Exam, now: datetime) -> Optional[ExamDenied]:
    start, end = utc(exam.scheduled_start), utc(exam.scheduled_end)
    if start and now < start:
        return ExamDenied("not_yet_available", NOT_YET_AVAILABLE)
    if end and now > end:
        return ExamDenied("period_ended", PERIOD_ENDED)
    return None


def count_attempts(db: Session, exam_id: str, student_id: str) -> int:
    return db.query(func.count(models.Attempt.id)).filter(
        and_(
            models.Attempt.exam_id == exam_id,
            models.Attempt.student_id == student_id,
        )
    ).scalar() or 0


def effective_attempt_limit(db: Session, exam: models.Exam, student_id: str) -> int:
    grant = db.query(models.StudentAttemptLimit).filter(
        models.StudentAttemptLimit.exam_id == exam.id,
        models.StudentAttemptLimit.student_id == student_id,
    ).first()
    extra = grant.extra_attempts if grant else 0
    return exam.attempt_limit + (extra or 0)


def load_questions(db: Session, exam_id: str):
    rows = db.query(models.Question).filter(
        models.Question.exam_id == exam_id
    ).order_by(models.Question.position, models.Question.created_at).all()
    return [question_from_row(r) for r in rows]


def load_exam(db: Session, exam_id: str, student_id: str, now: Optional[datetime] = None) -> LoadedExam:
    """
    Checks, in order: the exam exists, the scheduling window is open and the
    student still has an attempt left. Raises ExamDenied on the first failure.
    """
    now = now or datetime.now(timezone.utc)

    exam = db.query(models.Exam).filter(models.Exam.id == exam_id).first()
    if not exam:
        raise ExamDenied("not_found", "Exam not found")

    denial = schedule_denial(exam, now)
    if denial:
        logger.info("student %s denied exam %s: %s", student_id, exam_id, denial.code)
        raise denial

    taken = count_attempts(db, exam_id, student_id)
    limit = effective_attempt_limit(db, exam, student_id)
    if taken >= limit:
        logger.info("student %s reached attempt limit %s/%s on exam %s", student_id, taken, limit, exam_id)
        raise ExamDenied(
            "attempt_limit_reached",
            f"{ATTEMPT_LIMIT_REACHED} ({taken}/{limit})",
        )

    return LoadedExam(
        exam=exam,
        questions=load_questions(db, exam_id),
        time_remaining=exam.time_limit * 60,
        attempts_taken=taken,
        effective_limit=limit,
    )


def request_extra_attempt(db: Session, exam: models.Exam, student_id: str, message: Optional[str] = None) -> models.Request:
    ticket = models.Request(
        student_id=student_id,
        exam_id=exam.id,
        type="extra_attempt",
        message=message or f"Request for extra attempt for exam: {exam.title}",
        status="pending",
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket
