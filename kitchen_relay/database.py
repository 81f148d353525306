from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from .config import get_settings


def build_engine(url: str, timeout: float = 5.0) -> Engine:
    """Create an engine whose connections give up after ``timeout`` seconds."""
    engine_kwargs = {}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": timeout}
    elif url.startswith("postgresql"):
        engine_kwargs["pool_timeout"] = timeout
        engine_kwargs["connect_args"] = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }

    engine = create_engine(url, echo=False, **engine_kwargs)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


settings = get_settings()
engine = build_engine(settings.database_url, settings.store_timeout)


def init_db(target: Engine | None = None) -> None:
    SQLModel.metadata.create_all(target or engine)

