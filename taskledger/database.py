"""Database configuration and session management."""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from taskledger.core.config import get_settings
from taskledger.services.errors import StorageUnavailable

SQLALCHEMY_DATABASE_URL = get_settings().sqlalchemy_database_url

# Configure engine based on database type
if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False}
    )
else:
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Dependency for FastAPI endpoints to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def storage_guard(db: Session):
    """Report operational failures of the database as StorageUnavailable."""
    try:
        yield db
    except OperationalError as exc:
        db.rollback()
        raise StorageUnavailable(f"Storage unavailable: {exc.orig}") from exc


@contextmanager
def atomic(db: Session):
    """
    Run a block of writes as one unit of work.

    Commits on success, rolls back on any failure.
    """
    with storage_guard(db):
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
