"""
Maitri - Telephony Webhook Models

Pydantic models for the telephony platform's webhook payloads.

Twilio posts form-encoded bodies with CamelCase keys (CallSid, From,
RecordingUrl); snake_case names are accepted too so JSON clients and tests
can post either form.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CallStatus(str, Enum):
    """Call lifecycle status as reported by Twilio status callbacks."""
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"

    @property
    def is_final(self) -> bool:
        return self in (
            CallStatus.COMPLETED,
            CallStatus.BUSY,
            CallStatus.FAILED,
            CallStatus.NO_ANSWER,
            CallStatus.CANCELED,
        )


class VoiceWebhook(BaseModel):
    """
    Body of /ivr/incoming, /ivr/process-audio, /ivr/continue-conversation
    and /ivr/break-glass-confirm.

    RecordingUrl is only present on the steps that follow a <Record>.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_sid: Optional[str] = Field(None, alias="CallSid", description="Provider's call ID")
    from_number: str = Field(..., alias="From", min_length=1, description="Caller phone number")
    to_number: Optional[str] = Field(None, alias="To", description="Dialed number")
    recording_url: Optional[str] = Field(None, alias="RecordingUrl", description="Recorded audio reference")

    @field_validator("call_sid", "recording_url", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CallStatusCallback(BaseModel):
    """Body of /ivr/status."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_sid: str = Field(..., alias="CallSid", description="Provider's call ID")
    status: CallStatus = Field(..., alias="CallStatus", description="New call status")
    duration: Optional[int] = Field(None, alias="CallDuration", description="Duration in seconds")


class MakeCallRequest(BaseModel):
    """Body of POST /ivr/make-call (outbound test call)."""

    to: str = Field(..., min_length=8, description="E.164 number to dial")


class MakeCallResponse(BaseModel):
    success: bool
    call_sid: Optional[str] = Field(None, serialization_alias="callSid")
    status: Optional[str] = None
    error: Optional[str] = None
