from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DEFAULT_TIMEZONE


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # one shared connection, otherwise each thread sees an empty database
        return create_engine(
            database_url, connect_args=connect_args, poolclass=StaticPool
        )
    eng = create_engine(database_url, connect_args=connect_args)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_session_factory(
    engine: Engine, timezone: str = DEFAULT_TIMEZONE
) -> sessionmaker[Session]:
    # sessions carry the timezone that "today" is resolved in
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        info={"timezone": timezone},
    )


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
