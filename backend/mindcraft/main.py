import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Body
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models, schemas, auth, loader
from .config import CORS_ORIGINS, LOG_LEVEL
from .db import Base, engine, SessionLocal
from .errors import AttemptClosed, ExamDenied, SessionNotFound, SubmissionFailed, UnsupportedLanguage
from .exam import earned_marks
from .judge import SUPPORTED_LANGUAGES, check_language, create_execution_client
from .lifecycle import format_time
from .sessions import SessionRegistry, student_view

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

registry = SessionRegistry(SessionLocal)
execution_client = create_execution_client()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield
    registry.close_all()

# APP SETUP


app = FastAPI(title="MindCraft Exam Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_registry() -> SessionRegistry:
    return registry


def get_execution_client():
    return execution_client


def _denied(e: ExamDenied, exam_id: str):
    if e.code == "not_found":
        return HTTPException(status_code=404, detail=e.reason)
    detail = {"code": e.code, "reason": e.reason}
    if e.code == "attempt_limit_reached":
        detail["request_path"] = f"/exams/{exam_id}/requests"
    return HTTPException(status_code=403, detail=detail)


def _session(registry: SessionRegistry, session_id: str, user: models.User):
    try:
        return registry.get(session_id, user.id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def _state_out(session) -> schemas.SessionStateOut:
    statuses = [
        schemas.QuestionStatusOut(
            question_id=q.id,
            number=i + 1,
            type=q.type,
            status=session.question_status(i),
        )
        for i, q in enumerate(session.questions)
    ]
    return schemas.SessionStateOut(
        session_id=session.id,
        state=session.state.value,
        time_remaining=session.time_remaining,
        time_display=format_time(session.time_remaining),
        violation_count=session.monitor.count,
        violations=session.monitor.violations,
        fullscreen=session.monitor.fullscreen,
        current_question_index=session.current_index,
        questions=statuses,
        answered=len(session.answers),
        total=len(session.questions),
        error=session.controller.last_error,
    )


def _submit_out(result, status: str) -> schemas.SubmitOut:
    if result is None:
        return schemas.SubmitOut(status=status)
    return schemas.SubmitOut(
        status=status,
        attempt_id=result.attempt_id,
        score=result.score,
        released=result.released,
        redirect=result.redirect,
        message=result.message,
    )


# AUTH


@app.post("/register")
def register(payload: schemas.RegisterIn, db: Session = Depends(auth.get_db)):
    if auth.get_user_by_email(db, payload.email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = models.User(
        email=payload.email,
        name=payload.name,
        hashed_password=auth.get_password_hash(payload.password),
        is_admin=False
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return {"msg": "user created", "email": user.email}


@app.post("/login", response_model=schemas.Token)
def login(payload: schemas.LoginIn, db: Session = Depends(auth.get_db)):
    user = auth.authenticate_user(db, payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=400, detail="Incorrect email or password")

    token = auth.create_access_token({"sub": user.email})
    return {"access_token": token, "token_type": "bearer"}


@app.get("/me")
def me(current_user: models.User = Depends(auth.get_current_user)):
    return {
        "id": current_user.id,
        "email": current_user.email,
        "name": current_user.name,
        "is_admin": current_user.is_admin
    }


# ADMIN


@app.post("/admin/exams", response_model=schemas.ExamOut)
def create_exam(
    exam_data: schemas.ExamCreateIn,
    current_user: models.User = Depends(auth.require_admin),
    db: Session = Depends(auth.get_db)
):
    new_exam = models.Exam(
        title=exam_data.title,
        topic=exam_data.topic,
        time_limit=exam_data.time_limit,
        attempt_limit=exam_data.attempt_limit,
        release_mode=exam_data.release_mode,
        scheduled_start=exam_data.scheduled_start,
        scheduled_end=exam_data.scheduled_end,
        created_by=current_user.id,
    )
    db.add(new_exam)
    db.flush()

    for position, q in enumerate(exam_data.questions):
        db.add(models.Question(exam_id=new_exam.id, position=position, **q.model_dump()))

    db.commit()
    db.refresh(new_exam)
    logger.info("admin %s created exam %s with %s questions", current_user.email, new_exam.id, len(exam_data.questions))
    return new_exam


@app.post("/admin/exams/{exam_id}/questions")
def add_question(
    exam_id: str,
    payload: dict = Body(...),
    current_user: models.User = Depends(auth.require_admin),
    db: Session = Depends(auth.get_db)
):
    exam_obj = db.query(models.Exam).filter(models.Exam.id == exam_id).first()
    if not exam_obj:
        raise HTTPException(status_code=404, detail="Exam not found")

    try:
        question = schemas.question_in_adapter.validate_python(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    last = db.query(func.max(models.Question.position)).filter(models.Question.exam_id == exam_id).scalar()
    row = models.Question(exam_id=exam_id, position=(last + 1) if last is not None else 0, **question.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return {"id": row.id, "position": row.position}


@app.put("/admin/exams/{exam_id}/students/{student_id}/extra-attempts")
def grant_extra_attempts(
    exam_id: str,
    student_id: str,
    payload: schemas.ExtraAttemptsIn,
    current_user: models.User = Depends(auth.require_admin),
    db: Session = Depends(auth.get_db)
):
    exam_obj = db.query(models.Exam).filter(models.Exam.id == exam_id).first()
    if not exam_obj:
        raise HTTPException(status_code=404, detail="Exam not found")

    grant = db.query(models.StudentAttemptLimit).filter(
        models.StudentAttemptLimit.exam_id == exam_id,
        models.StudentAttemptLimit.student_id == student_id,
    ).first()
    if grant:
        grant.extra_attempts = payload.extra_attempts
    else:
        db.add(models.StudentAttemptLimit(
            exam_id=exam_id, student_id=student_id, extra_attempts=payload.extra_attempts
        ))

    db.query(models.Request).filter(
        models.Request.exam_id == exam_id,
        models.Request.student_id == student_id,
        models.Request.type == "extra_attempt",
        models.Request.status == "pending",
    ).update({"status": "approved"}, synchronize_session=False)

    db.commit()
    return {
        "exam_id": exam_id,
        "student_id": student_id,
        "extra_attempts": payload.extra_attempts,
        "effective_attempt_limit": loader.effective_attempt_limit(db, exam_obj, student_id),
    }


@app.patch("/admin/attempts/{attempt_id}/release")
def toggle_release(
    attempt_id: str,
    current_user: models.User = Depends(auth.require_admin),
    db: Session = Depends(auth.get_db)
):
    attempt = db.query(models.Attempt).filter(models.Attempt.id == attempt_id).first()
    if not attempt:
        raise HTTPException(status_code=404, detail="Attempt not found")

    attempt.released = not attempt.released
    db.commit()
    return {"msg": "release updated", "released": attempt.released}


@app.get("/admin/requests", response_model=List[schemas.RequestOut])
def list_requests(
    current_user: models.User = Depends(auth.require_admin),
    db: Session = Depends(auth.get_db)
):
    return db.query(models.Request).order_by(models.Request.created_at.desc()).all()


# STUDENT: EXAMS


@app.get("/exams", response_model=List[schemas.ExamListItemOut])
def list_exams(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(auth.get_db)):
    now = datetime.now(timezone.utc)
    result = []
    for exam_obj in db.query(models.Exam).order_by(models.Exam.created_at.desc()).all():
        item = schemas.ExamOut.model_validate(exam_obj).model_dump()
        result.append(schemas.ExamListItemOut(
            **item,
            available=loader.schedule_denial(exam_obj, now) is None,
            attempts_taken=loader.count_attempts(db, exam_obj.id, current_user.id),
            effective_attempt_limit=loader.effective_attempt_limit(db, exam_obj, current_user.id),
        ))
    return result


@app.post("/exams/{exam_id}/requests", response_model=schemas.RequestOut, status_code=201)
def request_extra_attempt(
    exam_id: str,
    payload: Optional[schemas.RequestIn] = None,
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(auth.get_db)
):
    exam_obj = db.query(models.Exam).filter(models.Exam.id == exam_id).first()
    if not exam_obj:
        raise HTTPException(status_code=404, detail="Exam not found")
    return loader.request_extra_attempt(db, exam_obj, current_user.id, payload.message if payload else None)


# STUDENT: EXAM SESSION


@app.post("/exams/{exam_id}/session", response_model=schemas.SessionOut)
def start_session(
    exam_id: str,
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(auth.get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        loaded = loader.load_exam(db, exam_id, current_user.id)
    except ExamDenied as e:
        raise _denied(e, exam_id)

    session = registry.open(loaded, current_user.id)
    return schemas.SessionOut(
        session_id=session.id,
        exam=session.exam,
        questions=[student_view(q) for q in session.questions],
        time_remaining=session.time_remaining,
        state=session.state.value,
    )


@app.get("/sessions/{session_id}", response_model=schemas.SessionStateOut)
def get_session(
    session_id: str,
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    return _state_out(_session(registry, session_id, current_user))


@app.post("/sessions/{session_id}/navigate", response_model=schemas.SessionStateOut)
def navigate(
    session_id: str,
    payload: schemas.NavigateIn,
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _session(registry, session_id, current_user)
    try:
        session.navigate(payload.index)
    except IndexError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AttemptClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _state_out(session)


@app.put("/sessions/{session_id}/answers/{question_id}")
def save_answer(
    session_id: str,
    question_id: str,
    payload: dict = Body(...),
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _session(registry, session_id, current_user)
    try:
        answer = schemas.answer_in_adapter.validate_python(payload)
        record = session.set_answer(question_id, answer)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValueError, UnsupportedLanguage) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AttemptClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"msg": "answer_saved", "answer": schemas.answer_to_record(record)}


@app.post("/sessions/{session_id}/questions/{question_id}/run", response_model=schemas.RunOut)
def run_code(
    session_id: str,
    question_id: str,
    payload: schemas.RunCodeIn,
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
    executor=Depends(get_execution_client),
):
    session = _session(registry, session_id, current_user)
    try:
        record = session.run_code(question_id, payload.code, payload.language, executor)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ValueError, UnsupportedLanguage) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AttemptClosed as e:
        raise HTTPException(status_code=409, detail=str(e))

    question = session.question(question_id)
    pairs = list(zip(question.test_cases, record.test_results))
    hidden = [r for tc, r in pairs if tc.hidden]
    return schemas.RunOut(
        passed=sum(1 for r in record.test_results if r.passed),
        total=len(record.test_results),
        visible_results=[r for tc, r in pairs if not tc.hidden],
        hidden_passed=sum(1 for r in hidden if r.passed),
        hidden_total=len(hidden),
        score=record.score,
    )


@app.post("/sessions/{session_id}/events", response_model=schemas.ProctorDecision)
def proctor_event(
    session_id: str,
    event: schemas.ProctorEvent,
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    return _session(registry, session_id, current_user).dispatch(event)


@app.post("/sessions/{session_id}/submit", response_model=schemas.SubmitOut)
def submit_session(
    session_id: str,
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    session = _session(registry, session_id, current_user)
    try:
        result = session.submit()
    except SubmissionFailed as e:
        raise HTTPException(status_code=500, detail=f"Error submitting exam: {e}")

    if result is None:
        return _submit_out(session.controller.result, "already_submitted")
    return _submit_out(result, "submitted")


@app.delete("/sessions/{session_id}")
def leave_session(
    session_id: str,
    current_user: models.User = Depends(auth.get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        registry.close(session_id, current_user.id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"msg": "session_closed"}


# RESULT


@app.get("/attempts/{attempt_id}", response_model=schemas.AttemptOut)
def get_attempt(
    attempt_id: str,
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(auth.get_db)
):
    attempt = db.query(models.Attempt).filter(models.Attempt.id == attempt_id).first()
    if not attempt or (attempt.student_id != current_user.id and not current_user.is_admin):
        raise HTTPException(status_code=404, detail="Attempt not found")
    if not attempt.released and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Results have not been released yet")

    exam_obj = db.query(models.Exam).filter(models.Exam.id == attempt.exam_id).first()
    stored = attempt.answers or {}

    details = []
    for question in loader.load_questions(db, attempt.exam_id):
        record = stored.get(question.id)
        answer = schemas.answer_adapter.validate_python(record) if record else None
        details.append(schemas.QuestionResultOut(
            question_id=question.id,
            type=question.type,
            question_text=question.question_text,
            marks=question.marks,
            earned=earned_marks(question, answer),
            answer=record,
            correct_answer=getattr(question, "correct_answer", None),
            explanation=question.explanation,
        ))

    return schemas.AttemptOut(
        id=attempt.id,
        exam_id=attempt.exam_id,
        exam_title=exam_obj.title if exam_obj else "",
        score=attempt.score,
        status=attempt.status,
        released=attempt.released,
        submitted_at=attempt.submitted_at,
        violations=attempt.violations,
        details=details,
    )


# CODE EXECUTION


@app.get("/execute-code/languages")
def list_languages():
    return [{"key": key, "name": name} for key, name in SUPPORTED_LANGUAGES.items()]


@app.post("/execute-code", response_model=schemas.ExecuteOut)
def execute_code(payload: dict = Body(...), executor=Depends(get_execution_client)):
    language = payload.get("language")
    code = payload.get("code")
    test_cases = payload.get("testCases")

    if not language or not code or not isinstance(test_cases, list):
        raise HTTPException(status_code=400, detail="Invalid request. Missing language, code, or testCases.")

    try:
        check_language(language)
    except UnsupportedLanguage as e:
        raise HTTPException(status_code=400, detail=str(e))

    for tc in test_cases:
        if not isinstance(tc, dict) or not isinstance(tc.get("input"), str) or not isinstance(tc.get("output"), str):
            raise HTTPException(
                status_code=400,
                detail="Invalid test case structure. Each test case must have input and output."
            )

    try:
        results = executor.execute_test_cases(language, code, [(tc["input"], tc["output"]) for tc in test_cases])
    except Exception as e:
        logger.exception("code execution error")
        raise HTTPException(status_code=500, detail=str(e) or "Code execution failed")

    return {"results": [r.model_dump(by_alias=True) for r in results]}
