"""
Maitri - Core Domain Types

Internal type definitions shared by the funnel, storage and API layers.
The API layer converts these to Pydantic schemas for external communication.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the relational store round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_record_id() -> str:
    return str(uuid4())


def to_local_time(value: datetime, tz: tzinfo) -> datetime:
    """Convert a timestamp (naive values are UTC) to the display zone."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def format_clock_time(value: datetime, tz: tzinfo = timezone.utc) -> str:
    """Dashboard clock format in the display zone, e.g. "3:07 PM"."""
    return to_local_time(value, tz).strftime("%I:%M %p").lstrip("0")


# =============================================================================
# Enums
# =============================================================================

class Category(str, Enum):
    """Topic label assigned by the triage analysis."""
    MATERNAL = "Maternal"
    INFANT = "Infant"
    MENSTRUAL = "Menstrual"
    GENERAL = "General"

    @classmethod
    def parse(cls, value: Any) -> "Category":
        """Lenient parse; unknown labels fall back to GENERAL."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return cls.GENERAL


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class TurnDecision(str, Enum):
    """What the funnel decided after one recorded speech turn."""
    CONTINUE = "continue"            # speak response, keep listening
    END = "end"                      # speak response, hang up (turn limit reached)
    CALLER_ENDED = "caller_ended"    # caller said goodbye
    TURN_LIMIT = "turn_limit"        # request arrived after the turn bound
    ESCALATE = "escalate"            # emergency: ask for village name


# Severity score while a call log has not been analyzed yet
PENDING_SEVERITY = 0
MIN_SEVERITY = 1
MAX_SEVERITY = 5


# =============================================================================
# Persisted Records
# =============================================================================

@dataclass
class CallLog:
    """
    One inbound phone call.

    severity_level == PENDING_SEVERITY means analysis has not run yet; the
    category is only meaningful once it has.
    """
    caller_hash: str
    encrypted_phone: Optional[str] = None
    call_sid: Optional[str] = None
    transcription: Optional[str] = None
    ai_response: Optional[str] = None
    severity_level: int = PENDING_SEVERITY
    category: Category = Category.GENERAL
    is_break_glass: bool = False
    village_location: Optional[str] = None
    id: str = field(default_factory=new_record_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.severity_level == PENDING_SEVERITY

    def copy(self, **changes: Any) -> "CallLog":
        return replace(self, **changes)


@dataclass
class Alert:
    """Escalation record for a call whose severity crossed the emergency threshold."""
    call_id: str
    emergency_reason: Optional[str] = None
    status: AlertStatus = AlertStatus.PENDING
    asha_worker_id: Optional[str] = None
    id: str = field(default_factory=new_record_id)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == AlertStatus.PENDING

    def copy(self, **changes: Any) -> "Alert":
        return replace(self, **changes)


# Fields a caller may change after creation
CALL_LOG_MUTABLE_FIELDS = frozenset({
    "call_sid", "encrypted_phone", "transcription", "ai_response",
    "severity_level", "category", "is_break_glass", "village_location",
})
ALERT_MUTABLE_FIELDS = frozenset({
    "status", "emergency_reason", "asha_worker_id", "resolved_at",
})


# =============================================================================
# Analysis
# =============================================================================

@dataclass(frozen=True)
class AnalysisResult:
    """
    Output of the speech/LLM analysis collaborator for one recording.

    Attributes:
        severity: Triage score 1-5
        category: Topic label
        response_text: Empathetic reply to speak to the caller
        emergency_reason: Explanation when severity is at emergency level
        transcription: What the caller said, when available
        source: "openai" | "mock" | "fallback"
    """
    severity: int
    category: Category
    response_text: str
    emergency_reason: Optional[str] = None
    transcription: Optional[str] = None
    source: str = "mock"

    def with_severity_floor(self, floor: int, reason: str) -> "AnalysisResult":
        return replace(self, severity=max(self.severity, floor), emergency_reason=reason)

    def to_log_dict(self) -> Dict[str, Any]:
        """Loggable summary; free text is left out."""
        return {
            "severity": self.severity,
            "category": self.category.value,
            "has_emergency_reason": self.emergency_reason is not None,
            "source": self.source,
        }


@dataclass(frozen=True)
class TurnOutcome:
    """Result of running one speech turn through the escalation funnel."""
    decision: TurnDecision
    response_text: Optional[str] = None
    turn: int = 0
    analysis: Optional[AnalysisResult] = None
    call_log: Optional[CallLog] = None
    alert: Optional[Alert] = None


@dataclass(frozen=True)
class EmergencyAlertEvent:
    """Payload pushed to connected dashboards when break-glass completes."""
    alert_id: str
    masked_phone: str
    village_name: str
    timestamp: str
    severity_level: int
    category: str
    emergency_reason: Optional[str]

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "emergency_alert",
            "data": {
                "id": self.alert_id,
                "phoneNumber": self.masked_phone,
                "villageName": self.village_name,
                "timestamp": self.timestamp,
                "severityLevel": self.severity_level,
                "category": self.category,
                "emergencyReason": self.emergency_reason,
            },
        }
