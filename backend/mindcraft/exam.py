# backend/mindcraft/exam.py
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from sqlalchemy.orm import Session

from . import models
from .schemas import (
    CodingAnswer, CodingQuestion, ExamOut, McqAnswer, McqQuestion, Violation, answer_to_record,
)

logger = logging.getLogger(__name__)

Question = Union[McqQuestion, CodingQuestion]
Answer = Union[McqAnswer, CodingAnswer]


@dataclass
class ScoreReport:
    earned: Dict[str, float] = field(default_factory=dict)
    total_score: float = 0.0
    max_score: float = 0.0

    @property
    def percent(self) -> float:
        return (self.total_score / self.max_score) * 100 if self.max_score > 0 else 0


def earned_marks(question: Question, answer: Optional[Answer]) -> float:
    """Marks earned on one question. An unanswered question earns nothing."""
    if answer is None:
        return 0.0

    if isinstance(question, McqQuestion):
        if isinstance(answer, McqAnswer) and answer.answer == question.correct_answer:
            return question.marks
        return 0.0

    if isinstance(question, CodingQuestion):
        total = len(question.test_cases)
        if total == 0:
            # nothing to judge against
            return question.marks
        if not isinstance(answer, CodingAnswer) or not answer.has_run:
            return 0.0
        passed = sum(1 for r in answer.test_results if r.passed)
        return (passed / total) * question.marks

    raise TypeError(f"unknown question type: {type(question).__name__}")


def compute_score(questions: List[Question], answers: Dict[str, Answer]) -> ScoreReport:
    report = ScoreReport()
    for q in questions:
        report.max_score += q.marks
        earned = earned_marks(q, answers.get(q.id))
        report.earned[q.id] = earned
        report.total_score += earned
        logger.debug("question %s (%s): earned %s/%s", q.id, q.type, earned, q.marks)

    logger.info(
        "computed score %.4f/%.4f = %.2f%%",
        report.total_score, report.max_score, report.percent,
    )
    return report


def persist_attempt(
    db: Session,
    exam: ExamOut,
    student_id: str,
    questions: List[Question],
    answers: Dict[str, Answer],
    violations: List[Violation],
) -> models.Attempt:
    """Score the answers and write exactly one Attempt row."""
    report = compute_score(questions, answers)

    attempt = models.Attempt(
        exam_id=exam.id,
        student_id=student_id,
        answers={qid: answer_to_record(a) for qid, a in answers.items()},
        score=report.percent,
        status="completed",
        released=exam.release_mode == models.ReleaseMode.auto.value,
        violations=[v.model_dump(mode="json") for v in violations] or None,
    )
    try:
        db.add(attempt)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(attempt)
    return attempt
