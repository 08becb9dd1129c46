from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from backoffice.config import settings


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(url: str, **kwargs) -> Engine:
    connect_args = kwargs.pop("connect_args", {})
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)

    eng = create_engine(url, connect_args=connect_args, **kwargs)

    if is_sqlite:
        # pysqlite defers BEGIN until the first write, which lets two readers
        # both pass a stock check. Take the write lock at transaction start.
        @event.listens_for(eng, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(eng, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """Commit the enclosed unit of work, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def import_models() -> None:
    # Import all models so Base.metadata knows about them
    import backoffice.models.approval  # noqa: F401
    import backoffice.models.audit_log  # noqa: F401
    import backoffice.models.bulk_transfer  # noqa: F401
    import backoffice.models.catalog  # noqa: F401
    import backoffice.models.inventory  # noqa: F401
    import backoffice.models.sequence  # noqa: F401
    import backoffice.models.transfer  # noqa: F401
    import backoffice.models.user  # noqa: F401


def init_db(bind: Engine | None = None):
    import_models()
    Base.metadata.create_all(bind=bind or engine)
