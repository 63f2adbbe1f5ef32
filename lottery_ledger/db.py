from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseSettings


def make_engine(settings: DatabaseSettings) -> Engine:
    """Create an engine whose connections never wait longer than ``timeout_seconds``."""

    url = make_url(settings.url)
    timeout = settings.timeout_seconds
    kwargs = {"future": True, "echo": settings.echo, "pool_pre_ping": True}

    if url.get_backend_name() == "sqlite":
        connect_args = {"timeout": timeout, "check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every pooled connection sees its own empty database.
            return create_engine(settings.url, connect_args=connect_args, poolclass=StaticPool, **kwargs)
        return create_engine(settings.url, connect_args=connect_args, pool_timeout=timeout, **kwargs)

    if url.get_backend_name() == "postgresql":
        statement_ms = int(timeout * 1000)
        connect_args = {
            "connect_timeout": max(int(timeout), 1),
            "options": f"-c statement_timeout={statement_ms} -c lock_timeout={statement_ms}",
        }
        return create_engine(settings.url, connect_args=connect_args, pool_timeout=timeout, **kwargs)

    return create_engine(settings.url, pool_timeout=timeout, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
