import contextlib

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bookshare.config import DATABASE_URL
from bookshare.models import Base


def build_engine(url: str):
    # SQLite connections are shared across request threads
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


class DatabaseSession:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextlib.contextmanager
    def get_session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()
