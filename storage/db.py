# taskshoot/storage/db.py
from typing import Callable

from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session

from core.settings import DB_PATH, ensure_data_dirs

# Ensure SQLModel metadata is populated
import models.task  # noqa: F401
import models.sync_state  # noqa: F401
import models.sync_run  # noqa: F401
from storage import migrations


def create_sqlite_engine(url: str = f"sqlite:///{DB_PATH.as_posix()}", **kwargs):
    engine = create_engine(url, echo=False, connect_args={"check_same_thread": False}, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):  # pragma: no cover - driver hook
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


_engine = create_sqlite_engine()


def init_db(engine=None):
    target = engine or _engine
    if engine is None:
        ensure_data_dirs()
    SQLModel.metadata.create_all(target)
    migrations.run_all(target)
    return target


def get_session() -> Session:
    return Session(_engine, expire_on_commit=False)


def make_session_factory(engine) -> Callable[[], Session]:
    def factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return factory
