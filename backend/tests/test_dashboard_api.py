"""
Maitri - Dashboard API Tests

Tests for the dashboard REST endpoints using FastAPI TestClient.
These tests verify:
- Stats aggregation (calls today, active alerts, categories, trends)
- Pending alert enrichment and de-anonymization
- Recent calls with alert status
- Alert resolution (including unknown ids)
- Optional bearer-token protection
- System health endpoints

Run with: pytest tests/test_dashboard_api.py -v
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from maitri.api.routes import (
    PHONE_DECRYPTION_ERROR,
    average_response_time,
    build_dashboard_stats,
    category_breakdown,
    daily_trends,
)
from maitri.config import Settings
from maitri.core.types import Alert, AlertStatus, CallLog, Category, format_clock_time, utcnow

from conftest import CALLER_PHONE, OTHER_PHONE


async def seed_call(storage, identity, phone=CALLER_PHONE, severity=2, category=Category.GENERAL,
                    minutes_ago=0, village=None, alert=False, reason="reason"):
    call_log = await storage.create_call_log(CallLog(
        caller_hash=identity.hash(phone),
        encrypted_phone=identity.encrypt(phone),
        severity_level=severity,
        category=category,
        village_location=village,
        created_at=utcnow() - timedelta(minutes=minutes_ago),
    ))
    created_alert = None
    if alert:
        created_alert, _ = await storage.ensure_alert(call_log.id, reason)
    return call_log, created_alert


# =============================================================================
# Aggregation Helpers
# =============================================================================

class TestAggregations:
    """Tests for the pure stats helpers."""

    def test_category_breakdown_percentages(self):
        logs = [CallLog(caller_hash="h", category=c) for c in (
            Category.MATERNAL, Category.MATERNAL, Category.INFANT,
        )]

        breakdown = {item.label: item for item in category_breakdown(logs)}

        assert breakdown["Maternal"].count == 2
        assert breakdown["Maternal"].percentage == 67
        assert breakdown["Infant"].percentage == 33

    def test_category_breakdown_empty(self):
        assert category_breakdown([]) == []

    def test_average_response_time(self):
        now = utcnow()
        alerts = [
            Alert(call_id="a", status=AlertStatus.RESOLVED, created_at=now, resolved_at=now + timedelta(minutes=6)),
            Alert(call_id="b", status=AlertStatus.RESOLVED, created_at=now, resolved_at=now + timedelta(minutes=10)),
            Alert(call_id="c"),
        ]
        assert average_response_time(alerts) == "8 min"

    def test_average_response_time_without_resolutions(self):
        assert average_response_time([Alert(call_id="a")]) == "N/A"

    def test_daily_trends(self):
        now = utcnow()
        logs = [
            CallLog(caller_hash="h", created_at=now),
            CallLog(caller_hash="h", created_at=now),
            CallLog(caller_hash="h", created_at=now - timedelta(days=2)),
            CallLog(caller_hash="h", created_at=now - timedelta(days=30)),
        ]

        trends = daily_trends(logs, now)

        assert len(trends) == 7
        assert trends[-1].name == "Today"
        assert trends[-1].calls == 2
        assert trends[-3].calls == 1
        assert sum(point.calls for point in trends) == 3


# =============================================================================
# Endpoints
# =============================================================================

class TestDashboardStats:
    """Tests for GET /api/dashboard/stats."""

    @pytest.mark.asyncio
    async def test_stats(self, client: TestClient, storage, identity):
        await seed_call(storage, identity, category=Category.MATERNAL, severity=5, alert=True)
        await seed_call(storage, identity, phone=OTHER_PHONE, category=Category.INFANT)

        data = client.get("/api/dashboard/stats").json()

        assert data["callsToday"] == 2
        assert data["activeAlerts"] == 1
        assert data["avgResponseTime"] == "N/A"
        assert {item["label"] for item in data["categoryBreakdown"]} == {"Maternal", "Infant"}
        assert len(data["trends"]) == 7

    def test_stats_empty(self, client: TestClient):
        data = client.get("/api/dashboard/stats").json()

        assert data["callsToday"] == 0
        assert data["activeAlerts"] == 0
        assert data["categoryBreakdown"] == []


class TestPendingAlerts:
    """Tests for GET /api/alerts."""

    @pytest.mark.asyncio
    async def test_enriched_alert(self, client: TestClient, storage, identity):
        _, alert = await seed_call(
            storage, identity, severity=5, category=Category.MATERNAL,
            village="Rampur", alert=True, reason="भारी रक्तस्राव",
        )

        alerts = client.get("/api/alerts").json()

        assert len(alerts) == 1
        view = alerts[0]
        assert view["id"] == alert.id
        assert view["phoneNumber"] == CALLER_PHONE
        assert view["village"] == view["villageName"] == "Rampur"
        assert view["severity"] == view["severityLevel"] == 5
        assert view["category"] == "Maternal"
        assert view["emergencyReason"] == "भारी रक्तस्राव"
        assert view["timestamp"].endswith(("AM", "PM"))

    @pytest.mark.asyncio
    async def test_placeholders(self, client: TestClient, storage, identity):
        await seed_call(storage, identity, severity=4, alert=True, reason=None)

        view = client.get("/api/alerts").json()[0]

        assert view["village"] == "Pending location capture"
        assert view["emergencyReason"] == "Assessment in progress"

    @pytest.mark.asyncio
    async def test_decryption_failure_keeps_alert_visible(self, client: TestClient, storage, identity):
        call_log, _ = await seed_call(storage, identity, severity=5, alert=True)
        await storage.update_call_log(call_log.id, encrypted_phone="00:00:00")

        alerts = client.get("/api/alerts").json()

        assert len(alerts) == 1
        assert alerts[0]["phoneNumber"] == PHONE_DECRYPTION_ERROR

    @pytest.mark.asyncio
    async def test_missing_encrypted_phone(self, client: TestClient, storage, identity):
        call_log, _ = await seed_call(storage, identity, severity=5, alert=True)
        await storage.update_call_log(call_log.id, encrypted_phone=None)

        assert client.get("/api/alerts").json()[0]["phoneNumber"] == "Not Available"

    @pytest.mark.asyncio
    async def test_resolved_alerts_hidden(self, client: TestClient, storage, identity):
        _, alert = await seed_call(storage, identity, severity=5, alert=True)
        await storage.resolve_alert(alert.id)

        assert client.get("/api/alerts").json() == []


class TestRecentCalls:
    """Tests for GET /api/calls/recent."""

    @pytest.mark.asyncio
    async def test_recent_calls(self, client: TestClient, storage, identity):
        pending, _ = await seed_call(storage, identity, severity=5, alert=True, minutes_ago=1)
        calm, _ = await seed_call(storage, identity, phone=OTHER_PHONE, severity=1, minutes_ago=5)

        calls = client.get("/api/calls/recent").json()

        assert [c["id"] for c in calls] == [pending.id, calm.id]
        assert calls[0]["status"] == "Pending"
        assert calls[1]["status"] == "Resolved"
        assert calls[0]["severity"] == 5
        assert "phoneNumber" not in calls[0]

    @pytest.mark.asyncio
    async def test_limited_to_ten(self, client: TestClient, storage, identity):
        for i in range(12):
            await seed_call(storage, identity, minutes_ago=i)

        assert len(client.get("/api/calls/recent").json()) == 10


class TestResolveAlert:
    """Tests for POST /api/alerts/{id}/resolve."""

    @pytest.mark.asyncio
    async def test_resolve(self, client: TestClient, storage, identity):
        _, alert = await seed_call(storage, identity, severity=5, alert=True)

        response = client.post(f"/api/alerts/{alert.id}/resolve")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["alert"]["status"] == "RESOLVED"
        assert data["alert"]["resolvedAt"] is not None
        assert client.get("/api/dashboard/stats").json()["activeAlerts"] == 0

    @pytest.mark.asyncio
    async def test_unknown_id_returns_404_without_mutation(self, client: TestClient, storage, identity):
        _, alert = await seed_call(storage, identity, severity=5, alert=True)

        response = client.post("/api/alerts/does-not-exist/resolve")

        assert response.status_code == 404
        assert response.json() == {"error": "Alert not found"}
        stored = await storage.get_alert(alert.id)
        assert stored.status == AlertStatus.PENDING
        assert stored.resolved_at is None


class TestDashboardToken:
    """Tests for the optional bearer-token guard."""

    @pytest.fixture
    def secured_client(self, test_settings, storage, analysis):
        from main import create_app

        settings = test_settings.model_copy(update={"dashboard_api_token": "asha-token"})
        with TestClient(create_app(settings, storage=storage, analysis=analysis)) as c:
            yield c

    def test_missing_token_rejected(self, secured_client: TestClient):
        assert secured_client.get("/api/alerts").status_code == 401

    def test_wrong_token_rejected(self, secured_client: TestClient):
        response = secured_client.get("/api/alerts", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_valid_token_accepted(self, secured_client: TestClient):
        response = secured_client.get("/api/alerts", headers={"Authorization": "Bearer asha-token"})
        assert response.status_code == 200

    def test_alert_stream_requires_token(self, secured_client: TestClient):
        from starlette.websockets import WebSocketDisconnect

        with pytest.raises(WebSocketDisconnect):
            with secured_client.websocket_connect("/ws/alerts") as ws:
                ws.receive_json()

        with secured_client.websocket_connect("/ws/alerts?token=asha-token") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_webhooks_not_guarded(self, secured_client: TestClient):
        response = secured_client.post("/ivr/incoming", data={"CallSid": "CA1", "From": CALLER_PHONE})
        assert response.status_code == 200


class TestSystemEndpoints:
    """Tests for root and /api/system endpoints."""

    def test_root(self, client: TestClient):
        data = client.get("/").json()
        assert data["service"] == "Maitri"
        assert data["status"] == "operational"

    def test_health(self, client: TestClient):
        data = client.get("/api/system/health").json()

        assert data["status"] == "healthy"
        assert set(data["checks"]) == {"storage", "analysis", "encryption", "ivr", "alert_stream"}
        assert data["checks"]["analysis"]["service"] == "mock-analysis-v1"

    def test_probes(self, client: TestClient):
        assert client.get("/api/system/ready").json()["ready"] is True
        assert client.get("/api/system/live").json()["alive"] is True

    def test_config_has_no_secrets(self, client: TestClient, test_settings):
        body = client.get("/api/system/config").text
        assert test_settings.encryption_key not in body
        assert test_settings.phone_hash_salt not in body


class TestDisplayTimezone:
    """Dashboard times and the "today" boundary follow the configured zone."""

    IST = ZoneInfo("Asia/Kolkata")

    def test_clock_time_converted_from_utc(self):
        assert format_clock_time(datetime(2024, 3, 10, 9, 37)) == "9:37 AM"
        assert format_clock_time(datetime(2024, 3, 10, 9, 37), self.IST) == "3:07 PM"

    def test_calls_today_uses_local_midnight(self):
        now = datetime(2024, 3, 10, 20, 0)  # 01:30 on 11 March in India
        logs = [
            CallLog(caller_hash="h", created_at=datetime(2024, 3, 10, 19, 0)),  # 00:30 IST, today
            CallLog(caller_hash="h", created_at=datetime(2024, 3, 10, 18, 0)),  # 23:30 IST, yesterday
        ]

        assert build_dashboard_stats(logs, [], now=now).calls_today == 2
        local = build_dashboard_stats(logs, [], now=now, tz=self.IST)
        assert local.calls_today == 1
        assert [point.calls for point in local.trends[-2:]] == [1, 1]

    @pytest.mark.asyncio
    async def test_recent_call_time_in_display_zone(self, client: TestClient, storage, identity, test_settings):
        call_log, _ = await seed_call(storage, identity)

        calls = client.get("/api/calls/recent").json()

        assert test_settings.display_timezone == "Asia/Kolkata"
        assert calls[0]["time"] == format_clock_time(call_log.created_at, self.IST)

    def test_unknown_zone_rejected(self):
        with pytest.raises(ValidationError):
            Settings(display_timezone="Mars/Olympus_Mons")
