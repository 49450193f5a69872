# kubi_pipeline/db.py
"""Database session and connection management"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from kubi_pipeline.models.db import Base

logger = logging.getLogger(__name__)


class Database:
    """Ledger database connection and session manager"""

    def __init__(self):
        """Initialize database manager state"""
        self._engine: Optional[Engine] = None
        self._SessionLocal = None

    def init(self, url: str, create_tables: bool = False, **engine_kwargs) -> None:
        """
        Initialize the database connection.

        This should be called once at process startup.

        Args:
            url: SQLAlchemy connection URL
            create_tables: Create missing tables (init-db and tests)
            engine_kwargs: Passed through to create_engine

        Raises:
            SQLAlchemyError: If database initialization fails
        """
        try:
            engine_kwargs.setdefault('pool_pre_ping', True)
            self._engine = create_engine(url, **engine_kwargs)
            if create_tables:
                Base.metadata.create_all(self._engine)
            self._SessionLocal = sessionmaker(bind=self._engine, expire_on_commit=False)
            logger.info(f"Database initialized ({self._engine.dialect.name})")

        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e}")
            raise

    def init_engine(self, engine: Engine, create_tables: bool = True) -> None:
        """Bind to an already constructed engine"""
        self._engine = engine
        if create_tables:
            Base.metadata.create_all(engine)
        self._SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of database operations.

        Usage:
            with db.session() as session:
                session.add(some_object)

        Yields:
            Session: SQLAlchemy database session, committed on success

        Raises:
            RuntimeError: If database not initialized
            SQLAlchemyError: If database operations fail
        """
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """
        Clean up database connections.
        Should be called during application shutdown.
        """
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None


# Global database instance
db = Database()
