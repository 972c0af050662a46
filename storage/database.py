"""Engine and session factory for the sample buffer database."""

import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import BUFFER_DATABASE_URL, ensure_data_dir
from storage.models import Base

logger = logging.getLogger(__name__)


def create_buffer_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine and make sure the buffer tables exist.

    SQLite connections run with ``synchronous=FULL`` so a committed append
    is on disk before the commit returns.
    """
    url = database_url or BUFFER_DATABASE_URL
    if url == BUFFER_DATABASE_URL:
        ensure_data_dir()

    kwargs = {}
    if url.startswith('sqlite'):
        kwargs['connect_args'] = {'check_same_thread': False}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool

    engine = create_engine(url, **kwargs)

    if url.startswith('sqlite'):
        @event.listens_for(engine, 'connect')
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA journal_mode=WAL')
            cursor.execute('PRAGMA synchronous=FULL')
            cursor.close()

    Base.metadata.create_all(engine)
    logger.debug(f"Sample buffer database ready at {url}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
