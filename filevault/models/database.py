# filevault/models/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from filevault.core.config import get_settings

settings = get_settings()


def get_engine(database_url: str = settings.database_url):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # sessions are handed across the request thread pool
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


engine = get_engine()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

Base = declarative_base()


# DB session dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
