# ============================================================
# Core DB connection
# ============================================================
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from imagegate.domain.requests.models import Base


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared across threads."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def build_session_factory(database_url: str) -> sessionmaker:
    engine = build_engine(database_url)

    # Create tables
    Base.metadata.create_all(bind=engine)

    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
