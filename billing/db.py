"""
billing/db.py

Engine and session management for the billing store.

    - DATABASE_URL selects the store (PostgreSQL in production)
    - One scoped session per request thread, removed on app teardown
    - In-memory SQLite shares a single connection so tests see one database

Every balance and payment mutation in this package is a conditional or
relative UPDATE run through the session returned by get_db(); callers own
the commit.

Usage:
    from billing.db import get_db, init_db

    init_db(app)                       # at startup
    db = get_db()                      # in a request or CLI command
    db.query(Payment).filter_by(transaction_ref=ref).first()

Version History:
    2025-12-17: Initial implementation
    2026-01-09: configure_engine() for explicit URLs, SQLite pool settings
"""

import os
import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, scoped_session, Session
from sqlalchemy.pool import QueuePool, StaticPool


logger = logging.getLogger(__name__)

DEV_DATABASE_URL = 'postgresql://localhost:5432/billing_dev'

# PostgreSQL pool, sized for a couple of gunicorn workers per container
POOL_CONFIG = {
    'poolclass': QueuePool,
    'pool_size': 5,
    'max_overflow': 10,
    'pool_timeout': 30,
    'pool_recycle': 1800,
    'pool_pre_ping': True,
}

_engine = None
_scoped_session = None


# =============================================================================
# ENGINE
# =============================================================================

def get_database_url() -> str:
    """DATABASE_URL, or the local dev database when unset."""
    url = os.environ.get('DATABASE_URL') or os.environ.get('DEV_DATABASE_URL', '')

    if not url:
        url = DEV_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using {url}")

    # SQLAlchemy 2.0 only knows the postgresql:// scheme
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]

    return url


def _engine_kwargs(database_url: str) -> dict:
    if not database_url.startswith('sqlite'):
        return dict(POOL_CONFIG)

    kwargs = {'connect_args': {'check_same_thread': False}}
    if ':memory:' in database_url or database_url.rstrip('/') == 'sqlite:':
        kwargs['poolclass'] = StaticPool
    return kwargs


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


def configure_engine(database_url: Optional[str] = None):
    """
    Build a fresh engine and scoped session, disposing of the previous ones.

    Args:
        database_url: Explicit URL; defaults to get_database_url()

    Returns:
        The new engine
    """
    global _engine, _scoped_session

    if _scoped_session is not None:
        _scoped_session.remove()
    if _engine is not None:
        _engine.dispose()

    database_url = database_url or get_database_url()
    _engine = create_engine(database_url, **_engine_kwargs(database_url))
    if database_url.startswith('sqlite'):
        event.listen(_engine, 'connect', _enable_sqlite_foreign_keys)

    _scoped_session = scoped_session(sessionmaker(bind=_engine, expire_on_commit=False))

    logger.info(f"Database engine configured ({_engine.dialect.name})")
    return _engine


def get_engine():
    if _engine is None:
        configure_engine()
    return _engine


def get_scoped_session():
    if _scoped_session is None:
        configure_engine()
    return _scoped_session


# =============================================================================
# SESSIONS
# =============================================================================

def get_db() -> Session:
    """Session bound to the current thread (one per request)."""
    return get_scoped_session()


def create_all_tables():
    """Create missing tables. Safe to call on every start."""
    from billing.models import Base
    Base.metadata.create_all(get_engine())


def init_db(app=None, database_url: Optional[str] = None):
    """
    Wire the database into a Flask app.

    The engine is rebuilt only when a URL is given (argument or
    app.config['DATABASE_URL']) or none exists yet, so tests can configure
    an engine first and pass DATABASE_URL=None.
    """
    if database_url is None and app is not None:
        database_url = app.config.get('DATABASE_URL')

    if database_url or _engine is None:
        configure_engine(database_url)

    create_all_tables()

    if app is not None:
        @app.teardown_appcontext
        def remove_session(exception=None):
            get_scoped_session().remove()

        logger.info("Database initialized for Flask app")


# =============================================================================
# HEALTH CHECK
# =============================================================================

def check_connection() -> bool:
    """True if a trivial query succeeds (used by /api/billing/health)."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text('SELECT 1'))
        return True
    except Exception:
        logger.exception("Database health check failed")
        return False
