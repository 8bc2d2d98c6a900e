from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

import config


def _sqlite_immediate_transactions(engine):
    # pysqlite defers BEGIN until the first write, so two sessions that read
    # and then write can deadlock on the lock upgrade. Take the write lock
    # up front instead and let the busy timeout queue writers.
    @event.listens_for(engine, "connect")
    def _no_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, echo: bool = False):
    kwargs = {"echo": echo}
    in_memory = url in ("sqlite://", "sqlite:///:memory:")
    if url.startswith("sqlite"):
        # sessions are handed across threads by FastAPI's threadpool
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if in_memory:
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite") and not in_memory:
        _sqlite_immediate_transactions(engine)
    return engine


engine = make_engine(config.DATABASE_URL, echo=config.SQL_ECHO)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
Base = declarative_base()


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
