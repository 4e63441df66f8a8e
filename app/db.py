from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


def get_engine(database_url: str | None = None):
    url = make_url(database_url or settings.database_url)
    if url.get_backend_name() == "sqlite":
        # SQLite pools do not accept sizing arguments
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """Yield a database session and make sure it is closed afterwards.

    Example:
        for db in get_db():
            dispatcher.load_database_subscriptions(db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
