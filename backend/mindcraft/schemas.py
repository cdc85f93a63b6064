# backend/mindcraft/schemas.py
import json
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_validator, model_validator


# -------------------- AUTH --------------------

class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: Optional[str] = None

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class LoginIn(BaseModel):
    email: EmailStr
    password: str


# -------------------- QUESTIONS --------------------

def _parse_json_list(value):
    """Question JSON columns may come back as text from some drivers."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = json.loads(value)
    return value

class TestCase(BaseModel):
    input: str = Field(..., min_length=1)
    output: str = Field(..., min_length=1)
    hidden: bool = False

class Example(BaseModel):
    input: str
    output: str
    explanation: Optional[str] = None

class McqQuestionIn(BaseModel):
    type: Literal["mcq"] = "mcq"
    question_text: str = Field(..., min_length=1)
    marks: float = Field(..., gt=0)
    explanation: Optional[str] = None
    options: List[str] = Field(..., min_length=2)
    correct_answer: str

    @field_validator("options", mode="before")
    @classmethod
    def parse_options(cls, value):
        return _parse_json_list(value)

    @model_validator(mode="after")
    def correct_answer_is_an_option(self):
        if self.correct_answer not in self.options:
            raise ValueError("correct_answer must match one of the options exactly")
        return self

class CodingQuestionIn(BaseModel):
    type: Literal["coding"] = "coding"
    question_text: str = Field(..., min_length=1)
    marks: float = Field(..., gt=0)
    explanation: Optional[str] = None
    title: Optional[str] = None
    input_format: Optional[str] = None
    output_format: Optional[str] = None
    constraints: Optional[str] = None
    examples: List[Example] = Field(default_factory=list)
    test_cases: List[TestCase] = Field(default_factory=list)

    @field_validator("examples", "test_cases", mode="before")
    @classmethod
    def parse_lists(cls, value):
        return _parse_json_list(value)

class McqQuestion(McqQuestionIn):
    id: str

class CodingQuestion(CodingQuestionIn):
    id: str

QuestionIn = Annotated[Union[McqQuestionIn, CodingQuestionIn], Field(discriminator="type")]
StoredQuestion = Annotated[Union[McqQuestion, CodingQuestion], Field(discriminator="type")]
question_adapter = TypeAdapter(StoredQuestion)

QUESTION_FIELDS = (
    "id", "type", "question_text", "marks", "explanation", "options", "correct_answer",
    "title", "input_format", "output_format", "constraints", "examples", "test_cases",
)

def question_from_row(row) -> Union[McqQuestion, CodingQuestion]:
    data = {f: getattr(row, f) for f in QUESTION_FIELDS}
    return question_adapter.validate_python({k: v for k, v in data.items() if v is not None})


# -------------------- ANSWERS & RESULTS --------------------

class TestCaseResult(BaseModel):
    """Outcome of running a program against one test case."""
    model_config = ConfigDict(populate_by_name=True)

    passed: bool
    actual_output: str = Field("", alias="actualOutput")
    expected_output: str = Field("", alias="expectedOutput")
    error: Optional[str] = None
    execution_time: float = Field(0, alias="executionTime")  # ms

class McqAnswer(BaseModel):
    type: Literal["mcq"] = "mcq"
    answer: str

class CodingAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["coding"] = "coding"
    code: str = ""
    language: str = "python"
    test_results: List[TestCaseResult] = Field(default_factory=list, alias="testResults")
    has_run: bool = Field(False, alias="hasRun")
    score: float = 0

AnswerRecord = Annotated[Union[McqAnswer, CodingAnswer], Field(discriminator="type")]
answer_adapter = TypeAdapter(AnswerRecord)

def answer_to_record(answer) -> dict:
    return answer.model_dump(by_alias=True, exclude_none=True)


class CodingAnswerIn(BaseModel):
    type: Literal["coding"] = "coding"
    code: str
    language: str = "python"

AnswerIn = Annotated[Union[McqAnswer, CodingAnswerIn], Field(discriminator="type")]


# -------------------- PROCTORING --------------------

ViolationType = Literal["fullscreen_exit", "tab_switch", "copy_paste", "key_shortcut"]

class Violation(BaseModel):
    type: ViolationType
    timestamp: datetime
    count: int

class ProctorEvent(BaseModel):
    """A browser event reported by the exam page."""
    type: Literal["visibilitychange", "copy", "cut", "paste", "keydown", "fullscreenchange", "contextmenu"]
    hidden: Optional[bool] = None
    fullscreen: Optional[bool] = None
    key: Optional[str] = None
    ctrl_key: bool = False
    meta_key: bool = False
    active_element: Optional[str] = None  # tag name of document.activeElement

class ProctorDecision(BaseModel):
    prevent_default: bool = False
    violation: Optional[Violation] = None
    warning: Optional[str] = None
    violation_count: int = 0
    auto_submitting: bool = False
    fullscreen: bool = False


# -------------------- EXAMS --------------------

class ExamCreateIn(BaseModel):
    title: str = Field(..., min_length=1)
    topic: Optional[str] = None
    time_limit: int = Field(..., gt=0, description="Minutes")
    attempt_limit: int = Field(1, ge=1)
    release_mode: Literal["auto", "manual"] = "auto"
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    questions: List[QuestionIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def schedule_is_ordered(self):
        if self.scheduled_start and self.scheduled_end and self.scheduled_start >= self.scheduled_end:
            raise ValueError("scheduled_start must be before scheduled_end")
        return self

class ExamOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    topic: Optional[str] = None
    time_limit: int
    attempt_limit: int
    release_mode: str
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None

class ExamListItemOut(ExamOut):
    available: bool
    attempts_taken: int
    effective_attempt_limit: int

class ExtraAttemptsIn(BaseModel):
    extra_attempts: int = Field(..., ge=0)

class RequestIn(BaseModel):
    message: Optional[str] = None

class RequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    exam_id: Optional[str] = None
    type: str
    message: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None


# -------------------- SESSIONS --------------------

class QuestionOut(BaseModel):
    """Student view of a question: no correct answer, no hidden test cases."""
    id: str
    type: str
    question_text: str
    marks: float
    options: Optional[List[str]] = None
    title: Optional[str] = None
    input_format: Optional[str] = None
    output_format: Optional[str] = None
    constraints: Optional[str] = None
    examples: Optional[List[Example]] = None
    test_cases: Optional[List[TestCase]] = None
    hidden_test_cases: int = 0

class SessionOut(BaseModel):
    session_id: str
    exam: ExamOut
    questions: List[QuestionOut]
    time_remaining: int
    state: str

class QuestionStatusOut(BaseModel):
    question_id: str
    number: int
    type: str
    status: Literal["current", "answered", "visited", "unvisited"]

class SessionStateOut(BaseModel):
    session_id: str
    state: str
    time_remaining: int
    time_display: str
    violation_count: int
    violations: List[Violation]
    fullscreen: bool
    current_question_index: int
    questions: List[QuestionStatusOut]
    answered: int
    total: int
    error: Optional[str] = None  # last failed submission, retry allowed

class NavigateIn(BaseModel):
    index: int = Field(..., ge=0)

class RunCodeIn(BaseModel):
    code: str = Field(..., min_length=1)
    language: str = "python"

class RunOut(BaseModel):
    passed: int
    total: int
    visible_results: List[TestCaseResult]
    hidden_passed: int
    hidden_total: int
    score: float

class SubmitOut(BaseModel):
    status: Literal["submitted", "already_submitted"]
    attempt_id: Optional[str] = None
    score: Optional[float] = None
    released: Optional[bool] = None
    redirect: Optional[str] = None
    message: Optional[str] = None


# -------------------- RESULTS --------------------

class QuestionResultOut(BaseModel):
    question_id: str
    type: str
    question_text: str
    marks: float
    earned: float
    answer: Optional[Dict] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None

class AttemptOut(BaseModel):
    id: str
    exam_id: str
    exam_title: str
    score: float
    status: str
    released: bool
    submitted_at: Optional[datetime] = None
    violations: Optional[List[Violation]] = None
    details: List[QuestionResultOut]


# -------------------- CODE EXECUTION --------------------

class ExecuteOut(BaseModel):
    results: List[TestCaseResult]

answer_in_adapter = TypeAdapter(AnswerIn)
question_in_adapter = TypeAdapter(QuestionIn)
