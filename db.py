# db.py
from sqlmodel import SQLModel, create_engine, Session
from dotenv import load_dotenv
import os

load_dotenv()

DB_PATH = os.path.join(os.path.dirname(__file__), "data", "parley.db")
DB_URL = os.getenv("PARLEY_DATABASE_URL") or f"sqlite:///{DB_PATH}"

if DB_URL == f"sqlite:///{DB_PATH}":
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

# Sync endpoints run in the threadpool, so sqlite connections cross threads
_connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
engine = create_engine(DB_URL, echo=False, connect_args=_connect_args)

def init_db():
    from services import models_db  # noqa: F401  registers the tables
    SQLModel.metadata.create_all(engine)

def reset_db():
    """Drop and recreate every table. Used by tests and local resets."""
    from services import models_db  # noqa: F401
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)

def get_session():
    return Session(engine)
