"""
Maitri - Dashboard Alert Stream

WebSocket push channel for ASHA worker dashboards.

Protocol:
    Server → Client:
        {"type": "emergency_alert", "data": {id, phoneNumber, villageName,
         timestamp, severityLevel, category, emergencyReason}}
        {"type": "pong"}

    Client → Server:
        {"type": "ping"}   (optional keep-alive)

Delivery is best-effort fan-out to whoever is connected at broadcast time:
no replay, no acknowledgement. Dashboards poll GET /api/alerts to catch up.
"""

import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from maitri.api.dependencies import token_matches
from maitri.config import Settings
from maitri.core.types import EmergencyAlertEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


class AlertBroadcaster:
    """
    Registry of connected dashboard sockets.

    Connections that fail a send are dropped from the registry.
    """

    def __init__(self) -> None:
        self._connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
            count = len(self._connections)
        logger.info("Dashboard connected (viewers=%d)", count)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)
            count = len(self._connections)
        logger.info("Dashboard disconnected (viewers=%d)", count)

    async def connection_count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def broadcast(self, event: EmergencyAlertEvent) -> int:
        """
        Send the event to every connected dashboard.

        Returns:
            Number of dashboards the message was delivered to
        """
        async with self._lock:
            targets = list(self._connections)

        message = event.to_message()
        delivered = 0
        dead = []
        for websocket in targets:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping dashboard connection after failed send: %s", e)
                dead.append(websocket)

        if dead:
            async with self._lock:
                self._connections.difference_update(dead)

        return delivered


# =============================================================================
# WebSocket Endpoint
# =============================================================================

@router.websocket("/ws/alerts")
async def alert_stream(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Dashboard subscription. When a dashboard token is configured it must be
    passed as the `token` query parameter.
    """
    settings: Settings = websocket.app.state.settings
    broadcaster: AlertBroadcaster = websocket.app.state.broadcaster

    if not token_matches(settings.dashboard_api_token, token):
        logger.warning("Rejected dashboard stream with invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await broadcaster.connect(websocket)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict) and parsed.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("Dashboard stream error: %s", str(e), exc_info=True)
    finally:
        await broadcaster.disconnect(websocket)
