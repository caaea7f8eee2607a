from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, declarative_base

from core.config import Settings, get_settings

settings = get_settings()


def engine_connect_args(settings: Settings) -> dict:
    backend = make_url(settings.database_url).get_backend_name()
    timeout_ms = settings.db_statement_timeout_ms
    if backend == "postgresql" and timeout_ms:
        return {"options": f"-c statement_timeout={timeout_ms}"}
    if backend == "sqlite":
        return {"timeout": max(timeout_ms, 1000) / 1000.0, "check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_timeout=settings.db_pool_timeout,
    pool_recycle=settings.db_pool_recycle,
    connect_args=engine_connect_args(settings),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()
