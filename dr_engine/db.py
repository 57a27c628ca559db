import threading

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from dr_engine.config import settings

_ENGINE: Engine | None = None
_ENGINE_LOCK = threading.Lock()


class Base(DeclarativeBase):
    pass


def get_engine() -> Engine:
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is None:
            url = settings.database_url or "sqlite+pysqlite:///:memory:"
            if url.startswith("sqlite"):
                _ENGINE = create_engine(url, connect_args={"check_same_thread": False})
            else:
                _ENGINE = create_engine(
                    url,
                    pool_size=settings.db_pool_size,
                    max_overflow=settings.db_max_overflow,
                    pool_timeout=settings.db_pool_timeout,
                    pool_recycle=settings.db_pool_recycle,
                    pool_pre_ping=True,
                )
        return _ENGINE


class _LazySessionFactory:
    """Binds the sessionmaker on first use so importing models never opens a connection."""

    def __init__(self) -> None:
        self._factory: sessionmaker | None = None

    def __call__(self, **kwargs):
        if self._factory is None:
            self._factory = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
        return self._factory(**kwargs)


SessionLocal = _LazySessionFactory()
