# backend/mindcraft/models.py
import enum
import uuid
from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Boolean, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from .db import Base

def gen_id():
    return str(uuid.uuid4())

class ReleaseMode(str, enum.Enum):
    auto = "auto"
    manual = "manual"

class QuestionType(str, enum.Enum):
    mcq = "mcq"
    coding = "coding"

class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=gen_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    hashed_password = Column(String(255), nullable=False)
    is_admin = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Exam(Base):
    __tablename__ = "exams"
    id = Column(String(36), primary_key=True, default=gen_id)
    title = Column(String(255), nullable=False)
    topic = Column(String(255), nullable=True)
    time_limit = Column(Integer, nullable=False)  # minutes
    attempt_limit = Column(Integer, nullable=False, default=1)
    release_mode = Column(String(10), nullable=False, default=ReleaseMode.auto.value)
    scheduled_start = Column(DateTime(timezone=True), nullable=True)
    scheduled_end = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(36), ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Question(Base):
    __tablename__ = "questions"
    id = Column(String(36), primary_key=True, default=gen_id)
    exam_id = Column(String(36), ForeignKey('exams.id'), nullable=False, index=True)
    type = Column(String(10), nullable=False, default=QuestionType.mcq.value)
    question_text = Column(Text, nullable=False)
    marks = Column(Float, nullable=False, default=1)
    explanation = Column(Text, nullable=True)

    # mcq
    options = Column(JSON, nullable=True)  # list of option strings
    correct_answer = Column(Text, nullable=True)

    # coding
    title = Column(String(255), nullable=True)
    input_format = Column(Text, nullable=True)
    output_format = Column(Text, nullable=True)
    constraints = Column(Text, nullable=True)
    examples = Column(JSON, nullable=True)  # [{input, output, explanation}]
    test_cases = Column(JSON, nullable=True)  # [{input, output, hidden}]

    position = Column(Integer, nullable=False, default=0)  # order within the exam

    created_at = Column(DateTime(timezone=True), server_default=func.now())

class StudentAttemptLimit(Base):
    __tablename__ = "student_attempt_limits"
    __table_args__ = (UniqueConstraint("student_id", "exam_id", name="uniq_student_exam_limit"),)
    id = Column(String(36), primary_key=True, default=gen_id)
    student_id = Column(String(36), ForeignKey('users.id'), nullable=False)
    exam_id = Column(String(36), ForeignKey('exams.id'), nullable=False)
    extra_attempts = Column(Integer, nullable=False, default=0)

class Attempt(Base):
    __tablename__ = "attempts"
    id = Column(String(36), primary_key=True, default=gen_id)
    exam_id = Column(String(36), ForeignKey('exams.id'), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    answers = Column(JSON, nullable=False)  # question_id -> answer record
    score = Column(Float, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="completed")
    released = Column(Boolean, nullable=False, default=False)
    violations = Column(JSON, nullable=True)
    submitted_at = Column(DateTime(timezone=True), server_default=func.now())

class Request(Base):
    __tablename__ = "requests"
    id = Column(String(36), primary_key=True, default=gen_id)
    student_id = Column(String(36), ForeignKey('users.id'), nullable=False)
    exam_id = Column(String(36), ForeignKey('exams.id'), nullable=True)
    type = Column(String(30), nullable=False)  # extra_attempt
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending")  # pending/approved/denied
    created_at = Column(DateTime(timezone=True), server_default=func.now())
