import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./risk_engine.db")


def _engine_kwargs(url: str):
    if url.startswith("sqlite"):
        # sessions are handed across the background worker thread
        return {"connect_args": {"check_same_thread": False}}
    return {}


engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

# SessionLocal for dependency injection in FastAPI
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
class Base(DeclarativeBase):
    pass


def init_db(bind=None):
    # models must be imported so their tables register on Base.metadata
    from risk_engine.models import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
