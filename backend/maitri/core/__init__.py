"""
Maitri - Core Package

Domain types, storage interface, exceptions and logging shared by the
telephony webhooks and the dashboard API:
- types: CallLog, Alert, AnalysisResult and friends
- storage: Storage protocol, in-memory implementation, factory
"""

from .types import (
    Alert,
    AlertStatus,
    AnalysisResult,
    CallLog,
    Category,
    EmergencyAlertEvent,
    TurnDecision,
    TurnOutcome,
)
from .storage import Storage, InMemoryStorage, create_storage

__all__ = [
    # Types
    "Alert",
    "AlertStatus",
    "AnalysisResult",
    "CallLog",
    "Category",
    "EmergencyAlertEvent",
    "TurnDecision",
    "TurnOutcome",
    # Storage
    "Storage",
    "InMemoryStorage",
    "create_storage",
]
