import logging
from typing import Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings

logger = logging.getLogger(__name__)


def create_ledger_engine(database_url: str) -> Engine:
    kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            # One shared connection, or each thread would see an empty database.
            kwargs["poolclass"] = StaticPool
    eng = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_immediate)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # Transactions are opened explicitly in _begin_immediate.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_immediate(conn):
    conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_ledger_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine = engine, *, seed: Optional[bool] = None) -> bool:
    """Create missing tables; seed defaults when the database is new.

    Returns True when the database was freshly created.
    """
    import models  # noqa: F401  registers the tables on Base.metadata
    from services import seed_defaults

    is_new = not inspect(bind).has_table("categories")
    Base.metadata.create_all(bind)
    if seed is None:
        seed = get_settings().seed_defaults
    if is_new and seed:
        with Session(bind, autoflush=False, expire_on_commit=False) as session:
            seed_defaults(session)
        logger.info("init_db: seeded default account and categories")
    return is_new
