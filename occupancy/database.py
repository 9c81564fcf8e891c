"""
Database setup using SQLAlchemy.

We create:
- an Engine bound to the DATABASE_URL from config
- a SessionLocal factory for the history archive
- a Base class to declare ORM models

The database only archives occupancy history; live session state is kept
in memory by the polling service.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from occupancy.config import settings


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, echo=False, connect_args=connect_args)


# Engine: the core connection to the DB (SQLite by default)
engine = make_engine(settings.database_url)

# Session factory: each archive write gets its own session
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

# Base class for all ORM models
Base = declarative_base()
