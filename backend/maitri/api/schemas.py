"""
Maitri - API Schemas

Pydantic models for the dashboard REST API.
Field names are snake_case in Python and camelCase on the wire, the
contract the dashboard frontend consumes.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from maitri.core.types import Alert, AlertStatus


class CamelModel(BaseModel):
    """Base for response bodies serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===========================================
# Dashboard Stats
# ===========================================

class CategoryCount(CamelModel):
    label: str
    count: int
    percentage: int = Field(..., ge=0, le=100, description="Rounded share of all calls")


class TrendPoint(CamelModel):
    name: str = Field(..., description="Day label, e.g. 'Mon' or 'Today'")
    calls: int


class DashboardStats(CamelModel):
    """Aggregates shown on the dashboard header and charts."""

    calls_today: int
    active_alerts: int
    avg_response_time: str = Field(..., description="e.g. '8 min', or 'N/A' before any resolution")
    category_breakdown: List[CategoryCount]
    trends: List[TrendPoint]


# ===========================================
# Alerts & Calls
# ===========================================

class AlertView(CamelModel):
    """
    Pending alert enriched with its call log.

    phone_number is the de-anonymized caller number; this authenticated
    endpoint is the only place it leaves the server in full.
    """

    id: str
    timestamp: str
    severity: int
    village: str
    category: str
    phone_number: str
    village_name: str
    severity_level: int
    emergency_reason: str


class RecentCall(CamelModel):
    id: str
    time: str
    category: str
    severity: int
    status: str = Field(..., description="'Pending' while the call has a pending alert, else 'Resolved'")


class AlertRecord(CamelModel):
    id: str
    call_id: str
    status: AlertStatus
    emergency_reason: Optional[str] = None
    asha_worker_id: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertRecord":
        return cls(
            id=alert.id,
            call_id=alert.call_id,
            status=alert.status,
            emergency_reason=alert.emergency_reason,
            asha_worker_id=alert.asha_worker_id,
            created_at=alert.created_at,
            resolved_at=alert.resolved_at,
        )


class ResolveAlertResponse(CamelModel):
    success: bool
    alert: AlertRecord


# ===========================================
# System
# ===========================================

class HealthResponse(BaseModel):
    """System health check response."""
    status: str = Field(..., description="Overall system status")
    version: str
    components: Dict[str, str] = Field(
        default_factory=dict,
        description="Status of individual components"
    )
