import functools
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from loan_tracker.db.base import Base
from loan_tracker.db.record_store import HttpRecordStore
from loan_tracker.db.sql_store import SqlRecordStore


load_dotenv()

DEFAULT_RECORD_STORE_URL = "http://localhost:3001"
SUPPORTED_BACKENDS = {"http", "sql"}


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_number(name: str, default: str, cast=float):
    raw = (os.environ.get(name) or default).strip()
    try:
        return cast(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be numeric, got {raw!r}") from exc


def get_backend() -> str:
    backend = (os.environ.get("RECORD_STORE_BACKEND") or "http").strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise RuntimeError(f"Unsupported RECORD_STORE_BACKEND: {backend}")
    return backend


@functools.lru_cache(maxsize=None)
def get_sessionmaker(db_url: str) -> sessionmaker:
    engine = create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def build_record_store():
    if get_backend() == "sql":
        SessionLocalStore = get_sessionmaker(_require_env("RECORD_STORE_DB_URL"))
        return SqlRecordStore(SessionLocalStore())

    return HttpRecordStore(
        base_url=(os.environ.get("RECORD_STORE_URL") or DEFAULT_RECORD_STORE_URL).strip(),
        timeout=_env_number("RECORD_STORE_TIMEOUT", "10"),
        read_retries=_env_number("RECORD_STORE_READ_RETRIES", "2", int),
        retry_delay=_env_number("RECORD_STORE_RETRY_DELAY", "0.05"),
    )
