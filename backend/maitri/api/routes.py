"""
Maitri - Dashboard REST API

Endpoints the ASHA worker dashboard polls for statistics, pending alerts
and recent calls, plus alert resolution. Real-time alerts arrive
separately over the /ws/alerts WebSocket.

Privacy:
    Caller numbers are decrypted only in GET /api/alerts, for pending
    alerts. Call lists expose severity and category, never numbers.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from maitri.config import Settings
from maitri.core.exceptions import DecryptionError
from maitri.core.storage import Storage
from maitri.core.types import Alert, AlertStatus, CallLog, format_clock_time, to_local_time, utcnow
from maitri.telephony.privacy import CallerIdentity

from .dependencies import get_identity, get_settings, get_storage, require_dashboard_token
from .schemas import (
    AlertRecord,
    AlertView,
    CategoryCount,
    DashboardStats,
    RecentCall,
    ResolveAlertResponse,
    TrendPoint,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dashboard"], dependencies=[Depends(require_dashboard_token)])

PHONE_NOT_AVAILABLE = "Not Available"
PHONE_DECRYPTION_ERROR = "****-DECRYPTION-ERROR****"
VILLAGE_PENDING = "Pending location capture"
REASON_PENDING = "Assessment in progress"
TREND_DAYS = 7


# =============================================================================
# Aggregations
# =============================================================================

def category_breakdown(call_logs: Sequence[CallLog]) -> List[CategoryCount]:
    """Share of all calls per category, in first-seen order."""
    counts = Counter(log.category.value for log in call_logs)
    total = len(call_logs) or 1
    return [
        CategoryCount(label=label, count=count, percentage=int(count * 100 / total + 0.5))
        for label, count in counts.items()
    ]


def average_response_time(alerts: Sequence[Alert]) -> str:
    """Mean minutes from alert creation to resolution; "N/A" before any resolution."""
    durations = [
        (alert.resolved_at - alert.created_at).total_seconds()
        for alert in alerts
        if alert.status == AlertStatus.RESOLVED and alert.resolved_at is not None
    ]
    if not durations:
        return "N/A"
    minutes = sum(durations) / len(durations) / 60
    return f"{max(int(minutes + 0.5), 0)} min"


def daily_trends(
    call_logs: Sequence[CallLog],
    now: datetime,
    days: int = TREND_DAYS,
    tz: tzinfo = timezone.utc,
) -> List[TrendPoint]:
    """Calls per local day in `tz` for the last `days` days, oldest first."""
    per_day = Counter(to_local_time(log.created_at, tz).date() for log in call_logs)
    today = to_local_time(now, tz).date()
    points = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        points.append(TrendPoint(name="Today" if offset == 0 else day.strftime("%a"), calls=per_day.get(day, 0)))
    return points


def build_dashboard_stats(
    call_logs: Sequence[CallLog],
    alerts: Sequence[Alert],
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> DashboardStats:
    """callsToday counts from midnight in the display zone `tz`."""
    now = now or utcnow()
    today = to_local_time(now, tz).date()

    return DashboardStats(
        calls_today=sum(1 for log in call_logs if to_local_time(log.created_at, tz).date() == today),
        active_alerts=sum(1 for alert in alerts if alert.is_pending),
        avg_response_time=average_response_time(alerts),
        category_breakdown=category_breakdown(call_logs),
        trends=daily_trends(call_logs, now, tz=tz),
    )


def reveal_phone(identity: CallerIdentity, alert: Alert, call_log: CallLog) -> str:
    """Decrypt the caller's number for responders; placeholders keep the alert visible."""
    if not call_log.encrypted_phone:
        return PHONE_NOT_AVAILABLE
    try:
        return identity.decrypt(call_log.encrypted_phone)
    except DecryptionError:
        logger.error("CRITICAL: failed to decrypt phone for alert %s", alert.id, exc_info=True)
        return PHONE_DECRYPTION_ERROR


def to_alert_view(
    identity: CallerIdentity,
    alert: Alert,
    call_log: CallLog,
    tz: tzinfo = timezone.utc,
) -> AlertView:
    village = call_log.village_location or VILLAGE_PENDING
    return AlertView(
        id=alert.id,
        timestamp=format_clock_time(alert.created_at, tz),
        severity=call_log.severity_level,
        village=village,
        category=call_log.category.value,
        phone_number=reveal_phone(identity, alert, call_log),
        village_name=village,
        severity_level=call_log.severity_level,
        emergency_reason=alert.emergency_reason or REASON_PENDING,
    )


# =============================================================================
# Dashboard Endpoints
# =============================================================================

@router.get("/dashboard/stats", response_model=DashboardStats)
async def get_dashboard_stats(
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Aggregated statistics for the dashboard header and charts."""
    call_logs = await storage.list_call_logs()
    alerts = await storage.list_alerts()
    return build_dashboard_stats(call_logs, alerts, tz=settings.display_tz)


@router.get("/alerts", response_model=List[AlertView])
async def get_pending_alerts(
    storage: Storage = Depends(get_storage),
    identity: CallerIdentity = Depends(get_identity),
    settings: Settings = Depends(get_settings),
):
    """
    Pending alerts, newest first, with the caller's number de-anonymized.

    Alerts whose call log is missing are skipped and logged.
    """
    views = []
    for alert in await storage.list_pending_alerts():
        call_log = await storage.get_call_log(alert.call_id)
        if call_log is None:
            logger.error("Alert %s has no associated call log", alert.id)
            continue
        views.append(to_alert_view(identity, alert, call_log, settings.display_tz))
    return views


@router.get("/calls/recent", response_model=List[RecentCall])
async def get_recent_calls(
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Most recent calls with their alert status."""
    call_logs = (await storage.list_call_logs())[: settings.recent_calls_limit]
    status_by_call: Dict[str, AlertStatus] = {alert.call_id: alert.status for alert in await storage.list_alerts()}

    return [
        RecentCall(
            id=log.id,
            time=format_clock_time(log.created_at, settings.display_tz),
            category=log.category.value,
            severity=log.severity_level,
            status="Pending" if status_by_call.get(log.id) == AlertStatus.PENDING else "Resolved",
        )
        for log in call_logs
    ]


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=ResolveAlertResponse,
    responses={404: {"description": "Alert not found"}},
)
async def resolve_alert(alert_id: str, storage: Storage = Depends(get_storage)):
    """
    Mark an alert RESOLVED and stamp resolvedAt.

    Resolving an already-resolved alert keeps its original resolvedAt.
    """
    alert = await storage.resolve_alert(alert_id)
    if alert is None:
        return JSONResponse(status_code=404, content={"error": "Alert not found"})

    logger.info("Alert resolved: %s", alert.id)
    return ResolveAlertResponse(success=True, alert=AlertRecord.from_alert(alert))
