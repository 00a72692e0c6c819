from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine, event
import os


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    """Configure SQLite for concurrent task workers writing the same file."""
    try:
        cursor = dbapi_connection.cursor()
        # Wait for locks instead of failing immediately.
        cursor.execute("PRAGMA busy_timeout=5000")
        # Readers not blocked by writers.
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
    except Exception:
        pass


DB_PATH = os.path.join(os.path.dirname(__file__), "data", "sec13f.db")
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{DB_PATH}"


def make_engine(url: str):
    """Create an engine; SQLite URLs get thread-friendly connect args + pragmas."""

    if url.startswith("sqlite"):
        if url.startswith("sqlite:///") and ":memory:" not in url:
            os.makedirs(os.path.dirname(os.path.abspath(url[len("sqlite:///") :])), exist_ok=True)
        eng = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )
        event.listen(eng, "connect", _set_sqlite_pragmas)
        return eng
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create all tables registered on `Base`."""

    import models  # noqa: F401  (registers tables)

    Base.metadata.create_all(bind=bind or engine)
