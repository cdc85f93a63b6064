from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL

# SQLite needs to be shared with the countdown / forced-submission threads
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Create a connection to the database
engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)

# This creates a session to talk to the database
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False
)

# Base class for creating tables
Base = declarative_base()
