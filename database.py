import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from config import settings

# Allow tests to switch to an isolated SQLite database by setting TESTING=1
if os.environ.get("TESTING"):
    DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite://")
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        # One shared connection so threadpool workers see the same in-memory DB
        poolclass=StaticPool,
    )
else:
    DATABASE_URL = settings.DATABASE_URL
    engine = create_engine(DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
