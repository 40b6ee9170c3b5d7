from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from subscription_sync_svc.settings import get_settings

Base = declarative_base()

_settings = get_settings()

connect_args = {"check_same_thread": False} if _settings.database_url.startswith("sqlite") else {}
engine = create_engine(_settings.database_url, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """
    FastAPI dependency yielding a database session that is closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
