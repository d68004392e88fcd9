"""
Maitri - Call Log & Alert Storage

Generic CRUD interface over the two persisted entities, plus the
in-memory implementation used by tests and demo deployments.

The relational implementation lives in maitri.db.sql_storage; pick one
with create_storage(settings).
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from threading import Lock
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from maitri.config import Settings
from maitri.core.exceptions import CallLogNotFoundError, ConfigurationError, StorageError
from maitri.core.types import (
    ALERT_MUTABLE_FIELDS,
    CALL_LOG_MUTABLE_FIELDS,
    Alert,
    AlertStatus,
    CallLog,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class Storage(Protocol):
    """
    Protocol for call log / alert persistence.

    Invariants every implementation keeps:
        - An alert always references an existing call log
        - At most one alert per call log
        - resolved_at is written once, when the alert is first resolved
    """

    @abstractmethod
    async def create_call_log(self, call_log: CallLog) -> CallLog:
        ...

    @abstractmethod
    async def get_call_log(self, call_id: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def get_call_log_by_sid(self, call_sid: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def get_latest_call_log_for_caller(self, caller_hash: str) -> Optional[CallLog]:
        ...

    @abstractmethod
    async def list_call_logs(self) -> List[CallLog]:
        """All call logs, newest first."""
        ...

    @abstractmethod
    async def update_call_log(self, call_id: str, **updates) -> Optional[CallLog]:
        """Apply updates; returns None when the call log does not exist."""
        ...

    @abstractmethod
    async def create_alert(self, alert: Alert) -> Alert:
        """
        Raises:
            CallLogNotFoundError: referenced call log does not exist
            StorageError: the call log already has an alert
        """
        ...

    @abstractmethod
    async def ensure_alert(self, call_id: str, emergency_reason: Optional[str]) -> Tuple[Alert, bool]:
        """Return the call's alert, creating a PENDING one if missing. Second item is True when created."""
        ...

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    @abstractmethod
    async def get_alert_for_call(self, call_id: str) -> Optional[Alert]:
        ...

    @abstractmethod
    async def list_alerts(self) -> List[Alert]:
        ...

    @abstractmethod
    async def list_pending_alerts(self) -> List[Alert]:
        ...

    @abstractmethod
    async def update_alert(self, alert_id: str, **updates) -> Optional[Alert]:
        ...

    @abstractmethod
    async def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        """Mark RESOLVED; None when the alert does not exist."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


def check_update_fields(updates: dict, allowed: frozenset, entity: str) -> None:
    unknown = set(updates) - allowed
    if unknown:
        raise StorageError(
            f"Cannot update {entity} fields: {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)},
        )


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryStorage:
    """
    Dictionary-backed Storage. Thread-safe; records are copied on the way in
    and out so callers never mutate stored state directly.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._call_logs: Dict[str, CallLog] = {}
        self._alerts: Dict[str, Alert] = {}

    # --- Call logs ---

    async def create_call_log(self, call_log: CallLog) -> CallLog:
        with self._lock:
            if call_log.id in self._call_logs:
                raise StorageError(f"Call log {call_log.id} already exists")
            self._call_logs[call_log.id] = call_log.copy()
            return call_log.copy()

    async def get_call_log(self, call_id: str) -> Optional[CallLog]:
        with self._lock:
            found = self._call_logs.get(call_id)
            return found.copy() if found else None

    async def get_call_log_by_sid(self, call_sid: str) -> Optional[CallLog]:
        with self._lock:
            matches = [c for c in self._call_logs.values() if c.call_sid == call_sid]
            if not matches:
                return None
            return max(matches, key=lambda c: c.created_at).copy()

    async def get_latest_call_log_for_caller(self, caller_hash: str) -> Optional[CallLog]:
        with self._lock:
            matches = [c for c in self._call_logs.values() if c.caller_hash == caller_hash]
            if not matches:
                return None
            return max(matches, key=lambda c: c.created_at).copy()

    async def list_call_logs(self) -> List[CallLog]:
        with self._lock:
            logs = sorted(self._call_logs.values(), key=lambda c: c.created_at, reverse=True)
            return [c.copy() for c in logs]

    async def update_call_log(self, call_id: str, **updates) -> Optional[CallLog]:
        check_update_fields(updates, CALL_LOG_MUTABLE_FIELDS, "call log")
        with self._lock:
            current = self._call_logs.get(call_id)
            if current is None:
                return None
            updated = current.copy(**updates)
            self._call_logs[call_id] = updated
            return updated.copy()

    # --- Alerts ---

    def _alert_for_call_locked(self, call_id: str) -> Optional[Alert]:
        for alert in self._alerts.values():
            if alert.call_id == call_id:
                return alert
        return None

    async def create_alert(self, alert: Alert) -> Alert:
        with self._lock:
            if alert.call_id not in self._call_logs:
                raise CallLogNotFoundError(f"Call log {alert.call_id} not found")
            if self._alert_for_call_locked(alert.call_id) is not None:
                raise StorageError(f"Call log {alert.call_id} already has an alert")
            self._alerts[alert.id] = alert.copy()
            return alert.copy()

    async def ensure_alert(self, call_id: str, emergency_reason: Optional[str]) -> Tuple[Alert, bool]:
        with self._lock:
            existing = self._alert_for_call_locked(call_id)
            if existing is not None:
                return existing.copy(), False
            if call_id not in self._call_logs:
                raise CallLogNotFoundError(f"Call log {call_id} not found")
            alert = Alert(call_id=call_id, emergency_reason=emergency_reason)
            self._alerts[alert.id] = alert
            return alert.copy(), True

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            found = self._alerts.get(alert_id)
            return found.copy() if found else None

    async def get_alert_for_call(self, call_id: str) -> Optional[Alert]:
        with self._lock:
            found = self._alert_for_call_locked(call_id)
            return found.copy() if found else None

    async def list_alerts(self) -> List[Alert]:
        with self._lock:
            alerts = sorted(self._alerts.values(), key=lambda a: a.created_at, reverse=True)
            return [a.copy() for a in alerts]

    async def list_pending_alerts(self) -> List[Alert]:
        return [a for a in await self.list_alerts() if a.is_pending]

    async def update_alert(self, alert_id: str, **updates) -> Optional[Alert]:
        check_update_fields(updates, ALERT_MUTABLE_FIELDS, "alert")
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                return None
            updated = current.copy(**updates)
            self._alerts[alert_id] = updated
            return updated.copy()

    async def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                return None
            if current.status == AlertStatus.RESOLVED:
                return current.copy()
            updated = current.copy(status=AlertStatus.RESOLVED, resolved_at=utcnow())
            self._alerts[alert_id] = updated
            return updated.copy()

    async def clear(self) -> None:
        with self._lock:
            self._call_logs.clear()
            self._alerts.clear()
        logger.info("In-memory storage cleared")


# =============================================================================
# Factory Function
# =============================================================================

def create_storage(settings: Settings) -> Storage:
    """
    Create the storage backend named by settings.storage_backend.

    Returns:
        InMemoryStorage for "memory", SqlAlchemyStorage for "sqlalchemy"
    """
    backend = settings.storage_backend.lower()

    if backend == "memory":
        logger.warning("Using in-memory storage: call logs and alerts are lost on restart")
        return InMemoryStorage()

    if backend == "sqlalchemy":
        from maitri.db.sql_storage import SqlAlchemyStorage

        return SqlAlchemyStorage.from_url(settings.database_url)

    raise ConfigurationError(
        f"Unknown storage backend: {settings.storage_backend}",
        details={"allowed": ["memory", "sqlalchemy"]},
    )
