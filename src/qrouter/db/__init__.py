"""Database module for qrouter.

Exports:
- Base: SQLAlchemy declarative base
- session: Async engine and session management
"""

from qrouter.db.models import Base
from qrouter.db.session import db_session, get_session_factory, init_db

__all__ = ["Base", "db_session", "get_session_factory", "init_db"]
