import pytest

from mindcraft import models, schemas
from mindcraft.exam import compute_score, earned_marks, persist_attempt

from conftest import make_exam


def mcq(qid="q1", marks=2, correct="B"):
    return schemas.McqQuestion(id=qid, question_text="Pick one", marks=marks, options=["A", "B", "C"], correct_answer=correct)


def coding(qid="q2", marks=6, n_cases=3):
    cases = [schemas.TestCase(input=str(i), output=str(i * 2)) for i in range(1, n_cases + 1)]
    return schemas.CodingQuestion(id=qid, question_text="Double it", marks=marks, test_cases=cases)


def ran(passed, total):
    results = [schemas.TestCaseResult(passed=i < passed, expected_output="x") for i in range(total)]
    return schemas.CodingAnswer(code="...", test_results=results, has_run=True)


def test_all_correct_scores_100():
    questions = [mcq(), coding()]
    answers = {"q1": schemas.McqAnswer(answer="B"), "q2": ran(3, 3)}
    report = compute_score(questions, answers)
    assert report.total_score == 8
    assert report.max_score == 8
    assert report.percent == 100


def test_unanswered_scores_zero():
    report = compute_score([mcq(), coding()], {})
    assert report.total_score == 0
    assert report.percent == 0


def test_mcq_requires_exact_match():
    q = mcq(correct="B")
    assert earned_marks(q, schemas.McqAnswer(answer="B")) == 2
    assert earned_marks(q, schemas.McqAnswer(answer="b")) == 0
    assert earned_marks(q, schemas.McqAnswer(answer="B ")) == 0


def test_coding_partial_credit_is_proportional():
    assert earned_marks(coding(marks=6, n_cases=3), ran(1, 3)) == pytest.approx(2)


def test_coding_without_run_earns_nothing():
    answer = schemas.CodingAnswer(code="print(2)", has_run=False)
    assert earned_marks(coding(), answer) == 0


def test_coding_without_test_cases():
    q = coding(n_cases=0)
    assert earned_marks(q, schemas.CodingAnswer(code="pass")) == 6
    assert earned_marks(q, None) == 0


def test_empty_exam_has_zero_percent():
    assert compute_score([], {}).percent == 0


def test_weighted_percent():
    # 3/10 marks of mcq lost, 7/10 coding earned
    questions = [mcq(marks=3, correct="A"), coding(marks=7)]
    answers = {"q1": schemas.McqAnswer(answer="B"), "q2": ran(3, 3)}
    assert compute_score(questions, answers).percent == pytest.approx(70.0)


def test_unknown_question_type_raises():
    with pytest.raises(TypeError):
        earned_marks(object(), schemas.McqAnswer(answer="A"))


def test_persist_attempt_writes_one_row(db, student):
    exam = make_exam(db, release_mode="manual")
    questions = [mcq()]
    violation = schemas.Violation(type="tab_switch", timestamp="2026-01-01T10:00:00Z", count=1)

    attempt = persist_attempt(
        db, schemas.ExamOut.model_validate(exam), student.id, questions,
        {"q1": schemas.McqAnswer(answer="B")}, [violation],
    )

    assert db.query(models.Attempt).count() == 1
    assert attempt.score == 100
    assert attempt.released is False
    assert attempt.answers == {"q1": {"type": "mcq", "answer": "B"}}
    assert attempt.violations[0]["type"] == "tab_switch"
