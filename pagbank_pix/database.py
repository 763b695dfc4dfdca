from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from pagbank_pix.config import Settings

Base = declarative_base()


def create_session_factory(settings: Settings) -> sessionmaker:
    engine = create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
    )
    Base.metadata.create_all(bind=engine)
    # Intents are handed back to callers after the session closes.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
