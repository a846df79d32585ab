"""
Database engine and session management.
Default database: data/builder.db (relative to project root), overridable via
BUILDER_DATA_DIR or BUILDER_DATABASE_URL.
"""
import os
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

PROJECT_ROOT = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.getenv("BUILDER_DATA_DIR") or PROJECT_ROOT / "data")
DATABASE_PATH = DATA_DIR / "builder.db"

DATA_DIR.mkdir(parents=True, exist_ok=True)

DATABASE_URL = os.getenv("BUILDER_DATABASE_URL") or f"sqlite:///{DATABASE_PATH}"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db():
    """Initialize database tables."""
    from app.db.models import BuildJob, Template  # noqa: F401
    Base.metadata.create_all(bind=engine)
