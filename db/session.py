# db/session.py
# -*- coding: utf-8 -*-
"""
SQLAlchemy engine / session setup.

- MySQL (pymysql) when DB_HOST / DB_USER / DB_PASSWORD / DB_NAME are all set
- otherwise a local SQLite file (civic_dev.db) so the pipeline also runs
  without a database server (local development, demos)
"""

import os
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

from db.base import Base  # noqa: F401  (re-exported for convenience)

load_dotenv()

# ---------------------------------------------------------
# 1) Environment
# ---------------------------------------------------------

DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT", "3306")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")

DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

# ---------------------------------------------------------
# 2) MySQL or SQLite fallback
# ---------------------------------------------------------

if DB_HOST and DB_USER and DB_PASSWORD and DB_NAME:
    DB_BACKEND = "mysql"
    DATABASE_URL = (
        f"mysql+pymysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        f"?charset=utf8mb4"
    )
else:
    DB_BACKEND = "sqlite"
    SQLITE_PATH = os.path.abspath(os.getenv("SQLITE_PATH", "./civic_dev.db"))
    DATABASE_URL = f"sqlite:///{SQLITE_PATH}"

# ---------------------------------------------------------
# 3) Engine / SessionLocal
# ---------------------------------------------------------

engine_kwargs = {
    "echo": DB_ECHO,
    "future": True,
}

# FastAPI runs sync endpoints in a thread pool
if DB_BACKEND == "sqlite":
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    engine_kwargs["pool_recycle"] = 3600
    engine_kwargs["pool_pre_ping"] = True


def enable_sqlite_savepoints(sqlite_engine) -> None:
    """
    pysqlite opens transactions lazily, which breaks SAVEPOINT
    (Session.begin_nested). Let SQLAlchemy emit BEGIN itself.
    """

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = create_engine(DATABASE_URL, **engine_kwargs)

if DB_BACKEND == "sqlite":
    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    class_=Session,
)


# ---------------------------------------------------------
# 4) FastAPI dependency
# ---------------------------------------------------------

def get_db() -> Generator[Session, None, None]:
    """
    DB session per request.

        @router.get("/issues/{issue_id}")
        def read_issue(issue_id: str, db: Session = Depends(get_db)):
            ...
    """
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
