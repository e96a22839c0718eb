"""Database package for connector control."""

from connector_control.database.base import Base
from connector_control.database.session import SessionLocal, engine, get_db, init_db

__all__ = ["SessionLocal", "engine", "get_db", "init_db", "Base"]
