"""Database configuration and connection management."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from specfleet.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


class DurableStore:
    """Owns the engine and session factory of the durable snapshot database."""

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        self.database_url = database_url or settings.database_url
        connect_args = {"check_same_thread": False} if self.database_url.startswith("sqlite") else {}
        self.engine = create_engine(self.database_url, echo=echo, connect_args=connect_args)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_database(self) -> None:
        """Create the snapshot tables if they do not exist."""
        from . import models  # noqa: F401  registers the tables on Base

        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Durable store ready at {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for a database session committed on success.

        Usage:
            with store.session() as session:
                session.query(...)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
