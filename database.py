from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import Settings, get_settings


def create_db_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    connect_args: dict[str, object] = {}
    engine_args: dict[str, object] = {}
    timeout = settings.store_timeout_secs
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        engine_args["pool_timeout"] = timeout
        engine_args["pool_pre_ping"] = True
        if settings.database_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, int(timeout))
            connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"

    eng = create_engine(settings.database_url, connect_args=connect_args, **engine_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
