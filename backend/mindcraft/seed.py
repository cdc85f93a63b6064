import os

from sqlalchemy.orm import Session

from .auth import get_password_hash
from .db import SessionLocal, engine, Base
from .models import Exam, Question, User


ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@mindcraft.io")
ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "admin123")

SAMPLE_EXAM = {
    "title": "Python Basics",
    "topic": "python",
    "time_limit": 30,
    "attempt_limit": 1,
    "release_mode": "auto",
}

QUESTIONS = [
    {
        "type": "mcq",
        "question_text": "What is the output of print(2**3)?",
        "marks": 2,
        "options": ["6", "8", "9"],
        "correct_answer": "8",
        "explanation": "** is exponentiation, 2 to the power 3 is 8.",
    },
    {
        "type": "coding",
        "title": "Sum of two numbers",
        "question_text": "Read two integers from one line and print their sum.",
        "marks": 5,
        "input_format": "Two space separated integers a and b.",
        "output_format": "A single integer, a + b.",
        "constraints": "-10^9 <= a, b <= 10^9",
        "examples": [{"input": "2 3", "output": "5", "explanation": "2 + 3 = 5"}],
        "test_cases": [
            {"input": "2 3", "output": "5", "hidden": False},
            {"input": "-4 10", "output": "6", "hidden": False},
            {"input": "1000000000 1000000000", "output": "2000000000", "hidden": True},
        ],
    },
]


def seed():
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()

    try:
        admin = db.query(User).filter(User.email == ADMIN_EMAIL).first()
        if not admin:
            admin = User(
                email=ADMIN_EMAIL,
                name="Admin",
                hashed_password=get_password_hash(ADMIN_PASSWORD),
                is_admin=True,
            )
            db.add(admin)
            db.flush()

        exists = db.query(Exam).filter(Exam.title == SAMPLE_EXAM["title"]).first()
        if exists:
            print(f"Exam '{exists.title}' already exists, skipped.")
            db.commit()
            return

        exam = Exam(created_by=admin.id, **SAMPLE_EXAM)
        db.add(exam)
        db.flush()
        for position, q in enumerate(QUESTIONS):
            db.add(Question(exam_id=exam.id, position=position, **q))

        db.commit()
        print(f"Inserted exam '{exam.title}' with {len(QUESTIONS)} questions.")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
