# db.py
import os
from contextlib import contextmanager
from typing import Iterator

from dotenv import load_dotenv
from sqlmodel import SQLModel, create_engine, Session

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
  raise RuntimeError("DATABASE_URL is not set (see .env.example)")

# sqlite is only for local runs; FastAPI's threadpool needs this flag
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=connect_args)

def init_db() -> None:
  import models  # noqa: F401  registers payments, memberships, security_logs
  SQLModel.metadata.create_all(engine)

def get_session() -> Iterator[Session]:
  with Session(engine) as session:
    yield session

@contextmanager
def session_scope() -> Iterator[Session]:
  """Session for work outside a request, e.g. the scheduled rollover."""
  with Session(engine) as session:
    try:
      yield session
    except Exception:
      session.rollback()
      raise
