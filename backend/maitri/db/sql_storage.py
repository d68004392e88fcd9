"""
Maitri - SQLAlchemy Storage

Storage implementation over any SQLAlchemy-supported database
(SQLite for local runs, PostgreSQL in deployment).
"""

from __future__ import annotations

import functools
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from maitri.core.exceptions import CallLogNotFoundError, StorageError
from maitri.core.storage import check_update_fields
from maitri.core.types import (
    ALERT_MUTABLE_FIELDS,
    CALL_LOG_MUTABLE_FIELDS,
    Alert,
    AlertStatus,
    CallLog,
    utcnow,
)
from .models import AlertRow, Base, CallLogRow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def offload(func: Callable[..., T]) -> Callable[..., Awaitable[T]]:
    """Run a blocking session method on a worker thread."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> T:
        return await run_in_threadpool(func, *args, **kwargs)
    return wrapper


def _column_values(updates: dict) -> dict:
    """Enums are stored by value."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in updates.items()}


class SqlAlchemyStorage:
    """
    Storage backed by the call_logs and alerts tables.

    Each operation runs in its own short session on a worker thread; the
    unique constraint on alerts.call_id backs the one-alert-per-call invariant.
    """

    def __init__(self, engine: Engine, create_tables: bool = True):
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlAlchemyStorage":
        """
        Build an engine for database_url.

        In-memory SQLite ("sqlite://" or ":memory:") shares one connection so
        every session sees the same database.
        """
        kwargs: dict = {"echo": echo}
        is_sqlite = database_url.startswith("sqlite")

        if is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        engine = create_engine(database_url, **kwargs)

        if is_sqlite:
            @event.listens_for(engine, "connect")
            def _enable_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        logger.info("SqlAlchemyStorage using %s", engine.url.render_as_string(hide_password=True))
        return cls(engine)

    def _session(self) -> Session:
        return self._session_factory()

    # --- Call logs ---

    @offload
    def create_call_log(self, call_log: CallLog) -> CallLog:
        try:
            with self._session() as session, session.begin():
                row = CallLogRow.from_domain(call_log)
                session.add(row)
                session.flush()
                return row.to_domain()
        except SQLAlchemyError as e:
            raise StorageError("Failed to create call log", details={"error": str(e)}) from e

    @offload
    def get_call_log(self, call_id: str) -> Optional[CallLog]:
        with self._session() as session:
            row = session.get(CallLogRow, call_id)
            return row.to_domain() if row else None

    @offload
    def get_call_log_by_sid(self, call_sid: str) -> Optional[CallLog]:
        with self._session() as session:
            row = session.scalars(
                select(CallLogRow)
                .where(CallLogRow.call_sid == call_sid)
                .order_by(CallLogRow.created_at.desc())
                .limit(1)
            ).first()
            return row.to_domain() if row else None

    @offload
    def get_latest_call_log_for_caller(self, caller_hash: str) -> Optional[CallLog]:
        with self._session() as session:
            row = session.scalars(
                select(CallLogRow)
                .where(CallLogRow.caller_hash == caller_hash)
                .order_by(CallLogRow.created_at.desc())
                .limit(1)
            ).first()
            return row.to_domain() if row else None

    @offload
    def list_call_logs(self) -> List[CallLog]:
        with self._session() as session:
            rows = session.scalars(select(CallLogRow).order_by(CallLogRow.created_at.desc())).all()
            return [row.to_domain() for row in rows]

    @offload
    def update_call_log(self, call_id: str, **updates) -> Optional[CallLog]:
        check_update_fields(updates, CALL_LOG_MUTABLE_FIELDS, "call log")
        try:
            with self._session() as session, session.begin():
                row = session.get(CallLogRow, call_id)
                if row is None:
                    return None
                for key, value in _column_values(updates).items():
                    setattr(row, key, value)
                session.flush()
                return row.to_domain()
        except SQLAlchemyError as e:
            raise StorageError("Failed to update call log", details={"error": str(e)}) from e

    # --- Alerts ---

    @offload
    def create_alert(self, alert: Alert) -> Alert:
        try:
            with self._session() as session, session.begin():
                if session.get(CallLogRow, alert.call_id) is None:
                    raise CallLogNotFoundError(f"Call log {alert.call_id} not found")
                row = AlertRow.from_domain(alert)
                session.add(row)
                session.flush()
                return row.to_domain()
        except IntegrityError as e:
            raise StorageError(
                f"Call log {alert.call_id} already has an alert",
                details={"error": str(e.orig)},
            ) from e
        except SQLAlchemyError as e:
            raise StorageError("Failed to create alert", details={"error": str(e)}) from e

    async def ensure_alert(self, call_id: str, emergency_reason: Optional[str]) -> Tuple[Alert, bool]:
        existing = await self.get_alert_for_call(call_id)
        if existing is not None:
            return existing, False
        try:
            created = await self.create_alert(Alert(call_id=call_id, emergency_reason=emergency_reason))
            return created, True
        except StorageError:
            # Lost a race with a concurrent turn for the same call
            existing = await self.get_alert_for_call(call_id)
            if existing is None:
                raise
            return existing, False

    @offload
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._session() as session:
            row = session.get(AlertRow, alert_id)
            return row.to_domain() if row else None

    @offload
    def get_alert_for_call(self, call_id: str) -> Optional[Alert]:
        with self._session() as session:
            row = session.scalars(select(AlertRow).where(AlertRow.call_id == call_id)).first()
            return row.to_domain() if row else None

    @offload
    def list_alerts(self) -> List[Alert]:
        with self._session() as session:
            rows = session.scalars(select(AlertRow).order_by(AlertRow.created_at.desc())).all()
            return [row.to_domain() for row in rows]

    @offload
    def list_pending_alerts(self) -> List[Alert]:
        with self._session() as session:
            rows = session.scalars(
                select(AlertRow)
                .where(AlertRow.status == AlertStatus.PENDING.value)
                .order_by(AlertRow.created_at.desc())
            ).all()
            return [row.to_domain() for row in rows]

    @offload
    def update_alert(self, alert_id: str, **updates) -> Optional[Alert]:
        check_update_fields(updates, ALERT_MUTABLE_FIELDS, "alert")
        try:
            with self._session() as session, session.begin():
                row = session.get(AlertRow, alert_id)
                if row is None:
                    return None
                for key, value in _column_values(updates).items():
                    setattr(row, key, value)
                session.flush()
                return row.to_domain()
        except SQLAlchemyError as e:
            raise StorageError("Failed to update alert", details={"error": str(e)}) from e

    @offload
    def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        with self._session() as session, session.begin():
            row = session.get(AlertRow, alert_id)
            if row is None:
                return None
            if row.status != AlertStatus.RESOLVED.value:
                row.status = AlertStatus.RESOLVED.value
                row.resolved_at = utcnow()
                session.flush()
            return row.to_domain()

    @offload
    def clear(self) -> None:
        with self._session() as session, session.begin():
            session.query(AlertRow).delete()
            session.query(CallLogRow).delete()
        logger.info("SQL storage cleared")

    def dispose(self) -> None:
        self._engine.dispose()
