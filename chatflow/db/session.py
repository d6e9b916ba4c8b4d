from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chatflow.core.config import settings
from chatflow.models.base import Base

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Create all tables if they don't exist
def create_tables():
    # Register the models on Base.metadata
    import chatflow.models.chatbot  # noqa: F401

    Base.metadata.create_all(bind=engine)
