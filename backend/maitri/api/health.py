"""
Maitri - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request

from maitri import __version__
from maitri.config import Settings

from .dependencies import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])


def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


@router.get("/health")
async def health_check(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    Used by load balancers and monitoring systems.
    """
    state = request.app.state
    checks = {}

    # Storage health
    try:
        pending = await state.storage.list_pending_alerts()
        checks["storage"] = {
            "status": "healthy",
            "backend": settings.storage_backend,
            "pending_alerts": len(pending),
        }
    except Exception as e:
        logger.error("Storage health check failed: %s", e)
        checks["storage"] = {"status": "unhealthy", "backend": settings.storage_backend}

    # Analysis health
    checks["analysis"] = {
        "status": "healthy",
        "service": state.analysis.service_id,
    }

    # Privacy health
    checks["encryption"] = {
        "status": "degraded" if state.identity.cipher.is_fallback else "healthy",
        "fallback_key": state.identity.cipher.is_fallback,
    }

    # Live conversations and dashboards
    checks["ivr"] = {
        "status": "healthy",
        "active_calls": await state.funnel.turns.active_calls(),
    }
    checks["alert_stream"] = {
        "status": "healthy",
        "viewers": await state.broadcaster.connection_count(),
    }

    all_healthy = all(c.get("status") == "healthy" for c in checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": _timestamp(),
        "version": __version__,
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check() -> dict:
    """
    Readiness probe for container orchestration.

    Returns 200 if the service is ready to accept requests.
    """
    return {
        "ready": True,
        "timestamp": _timestamp(),
    }


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness probe."""
    return {
        "alive": True,
        "timestamp": _timestamp(),
    }


@router.get("/config")
async def config_info(
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Non-sensitive configuration information.

    Excludes keys, tokens, salts and the database URL.
    """
    return {
        "environment": settings.app_env,
        "debug": settings.app_debug,
        "log_level": settings.app_log_level,
        "backends": {
            "storage": settings.storage_backend,
            "analysis": settings.analysis_backend,
        },
        "ivr": {
            "max_conversation_turns": settings.max_conversation_turns,
            "emergency_severity_threshold": settings.emergency_severity_threshold,
            "tts_voice": settings.tts_voice,
            "tts_language": settings.tts_language,
        },
        "security": {
            "twilio_signature_validation": settings.validate_twilio_signature and not settings.is_development,
            "twilio_configured": bool(settings.twilio_account_sid and settings.twilio_auth_token),
            "dashboard_token_required": bool(settings.dashboard_api_token),
            "encryption_key_configured": bool(settings.encryption_key),
        },
        "timestamp": _timestamp(),
    }
