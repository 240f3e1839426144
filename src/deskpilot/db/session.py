from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


def create_sqlite_engine(db_path: str | Path) -> Engine:
    """Engine for a file-backed SQLite database.

    Foreign keys are switched on for every new DBAPI connection (SQLite leaves
    them off by default). The driver's implicit transaction handling is
    disabled and ``BEGIN`` is emitted explicitly so that DDL inside a
    transaction is rolled back with it.
    """
    engine = create_engine(f"sqlite:///{Path(db_path)}", future=True)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(db_path: str | Path):
    engine = create_sqlite_engine(db_path)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False), engine


@contextmanager
def session_scope(session_factory):
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    from deskpilot.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
