"""Ledger database connection and session management."""

from pathlib import Path
from typing import Union

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


def create_ledger_engine(db_file: Union[str, Path], echo: bool = False) -> Engine:
    """Create the engine for the deletion ledger database."""
    return create_engine(
        f"sqlite:///{db_file}",
        echo=echo,
        connect_args={"check_same_thread": False}
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the ledger engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db_session(session_factory: sessionmaker):
    """Context manager for ledger sessions."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def init_database(engine: Engine):
    """Initialize ledger tables."""
    from undeleter.models.base import Base

    # Import all models to ensure they're registered
    from undeleter.models import deletion  # noqa: F401

    Base.metadata.create_all(bind=engine)

    logger.info(f"Deletion ledger initialized at {engine.url.database}")
