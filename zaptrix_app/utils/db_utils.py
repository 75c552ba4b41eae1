# zaptrix_app/utils/db_utils.py

import logging
from contextlib import contextmanager
from typing import Optional, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.orm import sessionmaker, scoped_session, Session as SQLAlchemySession
from sqlalchemy.pool import StaticPool

from ..models import Base

logger = logging.getLogger(__name__)

_engine = None
_SessionFactory = None
_ScopedSessionFactory = None


def _engine_kwargs(db_uri: str, echo: bool) -> dict:
    if db_uri.startswith('sqlite'):
        # In-memory SQLite must share one connection across threads and sessions.
        return {
            'echo': echo,
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
        }
    return {
        'echo': echo,
        'pool_pre_ping': True,
        'pool_recycle': 3600,
    }


def init_db(app) -> bool:
    """
    Initialize the SQLAlchemy engine and session factories using app config.
    """
    global _engine, _SessionFactory, _ScopedSessionFactory

    db_uri = app.config.get('SQLALCHEMY_DATABASE_URI')
    if not db_uri:
        logger.error("SQLALCHEMY_DATABASE_URI not configured. Database features will fail.")
        return False

    try:
        db_uri_parts = db_uri.split('@')
        loggable_db_uri = db_uri_parts[-1] if len(db_uri_parts) > 1 else db_uri
        logger.info(f"Attempting to connect to database for Zaptrix: {loggable_db_uri}")

        _engine = create_engine(db_uri, **_engine_kwargs(db_uri, app.config.get('SQLALCHEMY_ECHO', False)))
        with _engine.connect():
            logger.info("Database connection test successful for Zaptrix.")

        _SessionFactory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=_engine)
        _ScopedSessionFactory = scoped_session(_SessionFactory)
        logger.info("SQLAlchemy SessionFactory and ScopedSessionFactory initialized successfully for Zaptrix.")
        return True

    except OperationalError as oe:
        logger.error(f"Database connection failed (OperationalError) for Zaptrix: {oe}", exc_info=True)
        _engine = None; _SessionFactory = None; _ScopedSessionFactory = None
        return False
    except Exception as e:
        logger.error(f"Database initialization failed for Zaptrix: {e}", exc_info=True)
        _engine = None; _SessionFactory = None; _ScopedSessionFactory = None
        return False


@contextmanager
def get_db_session() -> Generator[Optional[SQLAlchemySession], None, None]:
    """
    Yields a SQLAlchemy Session, handles commit/rollback, and always removes session from scope.
    """
    if not _ScopedSessionFactory:
        logger.error("ScopedSessionFactory not initialized. Cannot create DB session.")
        yield None
        return

    session: SQLAlchemySession = _ScopedSessionFactory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"DB Session {id(session)} SQLAlchemy error: {e}", exc_info=True)
        session.rollback()
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        _ScopedSessionFactory.remove()


def create_all_tables() -> bool:
    """
    Create all tables from SQLAlchemy models (linked to Base.metadata):
    'conversation_mappings' and 'portal_credentials'.
    """
    if not _engine:
        logger.error("Database engine not initialized. Cannot create tables for Zaptrix.")
        return False
    try:
        Base.metadata.create_all(bind=_engine)
        logger.info("SQLAlchemy Base.metadata.create_all() executed for Zaptrix.")
        return True
    except Exception as e:
        logger.error(f"Error during Zaptrix create_all_tables: {e}", exc_info=True)
        return False


def drop_all_tables() -> None:
    if _engine:
        Base.metadata.drop_all(bind=_engine)


def check_connection() -> bool:
    with get_db_session() as session:
        if not session:
            return False
        try:
            session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
