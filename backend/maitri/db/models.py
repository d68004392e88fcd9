"""
Maitri - Database Models

Two tables: one row per inbound call, and at most one escalation alert per call.
Phone numbers are stored only as a salted hash and an AES-GCM ciphertext.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

from maitri.core.types import (
    PENDING_SEVERITY,
    Alert,
    AlertStatus,
    CallLog,
    Category,
    new_record_id,
    utcnow,
)

Base = declarative_base()


class CallLogRow(Base):
    __tablename__ = "call_logs"

    id = Column(String(36), primary_key=True, default=new_record_id)
    call_sid = Column(String(64), nullable=True, index=True)
    caller_hash = Column(String(64), nullable=False, index=True)
    encrypted_phone = Column(Text, nullable=True)
    transcription = Column(Text, nullable=True)
    ai_response = Column(Text, nullable=True)
    severity_level = Column(Integer, nullable=False, default=PENDING_SEVERITY)
    category = Column(String(32), nullable=False, default=Category.GENERAL.value)
    is_break_glass = Column(Boolean, nullable=False, default=False)
    village_location = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_call_logs_caller_created", "caller_hash", "created_at"),)

    def to_domain(self) -> CallLog:
        return CallLog(
            id=self.id,
            call_sid=self.call_sid,
            caller_hash=self.caller_hash,
            encrypted_phone=self.encrypted_phone,
            transcription=self.transcription,
            ai_response=self.ai_response,
            severity_level=self.severity_level,
            category=Category.parse(self.category),
            is_break_glass=self.is_break_glass,
            village_location=self.village_location,
            created_at=self.created_at,
        )

    @classmethod
    def from_domain(cls, call_log: CallLog) -> "CallLogRow":
        return cls(
            id=call_log.id,
            call_sid=call_log.call_sid,
            caller_hash=call_log.caller_hash,
            encrypted_phone=call_log.encrypted_phone,
            transcription=call_log.transcription,
            ai_response=call_log.ai_response,
            severity_level=call_log.severity_level,
            category=Category.parse(call_log.category).value,
            is_break_glass=call_log.is_break_glass,
            village_location=call_log.village_location,
            created_at=call_log.created_at,
        )

    def __repr__(self):
        return f"<CallLogRow {self.id} severity={self.severity_level}>"


class AlertRow(Base):
    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=new_record_id)
    call_id = Column(String(36), ForeignKey("call_logs.id"), nullable=False)
    asha_worker_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=AlertStatus.PENDING.value, index=True)
    emergency_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("call_id", name="uq_alerts_call_id"),)

    def to_domain(self) -> Alert:
        return Alert(
            id=self.id,
            call_id=self.call_id,
            asha_worker_id=self.asha_worker_id,
            status=AlertStatus(self.status),
            emergency_reason=self.emergency_reason,
            created_at=self.created_at,
            resolved_at=self.resolved_at,
        )

    @classmethod
    def from_domain(cls, alert: Alert) -> "AlertRow":
        return cls(
            id=alert.id,
            call_id=alert.call_id,
            asha_worker_id=alert.asha_worker_id,
            status=AlertStatus(alert.status).value,
            emergency_reason=alert.emergency_reason,
            created_at=alert.created_at,
            resolved_at=alert.resolved_at,
        )

    def __repr__(self):
        return f"<AlertRow {self.id} call={self.call_id} status={self.status}>"
