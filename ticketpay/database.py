from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from ticketpay.config import database_url

DATABASE_URL = database_url()
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()
