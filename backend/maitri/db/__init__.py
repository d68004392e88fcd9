"""
Maitri - Relational Persistence

SQLAlchemy table mappings and the Storage implementation backed by them.
"""

from .models import Base, CallLogRow, AlertRow
from .sql_storage import SqlAlchemyStorage

__all__ = ["Base", "CallLogRow", "AlertRow", "SqlAlchemyStorage"]
