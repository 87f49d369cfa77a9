"""
SQLAlchemy models for the extraction history store.

History is append-only: one row per completed document result, no dedup.
"""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from mediextract.config import settings


Base = declarative_base()


class ExtractionHistory(Base):
    """Completed document results."""

    __tablename__ = "extraction_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_name = Column(String(500), nullable=False)
    file_size = Column(Integer, default=0)
    status = Column(String(50), nullable=False)  # always "completed" today
    completed_at = Column(String(64), nullable=True)  # ISO timestamp from the pipeline
    page_count = Column(Integer, nullable=True)
    prompt_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    pre_isolation_check = Column(Text, nullable=True)
    isolation_check = Column(Text, nullable=True)
    records = Column(JSON, nullable=False, default=list)
    logs = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)


Index("idx_extraction_history_created_at", ExtractionHistory.created_at)


# Database engine and session factory
_engine = None
_SessionLocal = None


def get_engine(database_url: str = None):
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        url = database_url or settings.get_database_url()
        if url.startswith("sqlite:///"):
            settings.outputs_dir.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(url, echo=settings.debug, pool_pre_ping=True)
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine()
        )
    return _SessionLocal


def init_db(engine=None):
    """Create tables if they do not exist."""
    Base.metadata.create_all(bind=engine or get_engine())
