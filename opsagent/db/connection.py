# ============================================================
# Core DB connection
# ============================================================
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .base import Base


def create_db_engine(url: str) -> Engine:
    """Create an engine. SQLite URLs get thread-sharing enabled; in-memory ones share one connection."""
    if not url.startswith("sqlite"):
        return create_engine(url)
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, connect_args={"check_same_thread": False})


def init_db(engine: Engine) -> None:
    """Create tables for every mapped record."""
    import opsagent.domain.approval.models  # noqa: F401
    import opsagent.domain.memory.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def create_session_factory(url: str, *, create_tables: bool = True) -> sessionmaker[Session]:
    engine = create_db_engine(url)
    if create_tables:
        init_db(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
