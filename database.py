from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


class Database:
    """Engine and session factory with an explicit lifecycle.

    Built once at process start and disposed at shutdown; nothing connects
    at import time.
    """

    def __init__(self, url: str, **engine_kwargs: object) -> None:
        self.url = url
        connect_args: dict[str, object] = dict(
            engine_kwargs.pop("connect_args", None) or {}
        )
        if url.startswith("sqlite"):
            connect_args.setdefault("check_same_thread", False)
        self.engine: Engine = create_engine(
            url, connect_args=connect_args, **engine_kwargs
        )
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_pragmas)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def session(self) -> Session:
        return self.SessionLocal()

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
