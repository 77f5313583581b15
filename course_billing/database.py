from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()
engine = None
SessionLocal = None


def init_db(database_url: str):
    global engine, SessionLocal
    if engine is None:
        kwargs = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection so every session sees the same in-memory db
                kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        # create tables
        from course_billing import models  # noqa: F401
        Base.metadata.create_all(bind=engine)


def reset_db():
    global engine, SessionLocal
    if engine is not None:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
    engine = None
    SessionLocal = None


@contextmanager
def session_scope():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
