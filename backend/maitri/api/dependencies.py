"""
Maitri - Request Dependencies

Every long-lived component is built once in the application lifespan and
stored on app.state; handlers receive them through these functions.
"""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from maitri.config import Settings
from maitri.core.storage import Storage
from maitri.telephony.funnel import EscalationFunnel
from maitri.telephony.privacy import CallerIdentity
from maitri.telephony.twiml import TwimlBuilder

bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Dependency to get settings from app state."""
    return request.app.state.settings


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_identity(request: Request) -> CallerIdentity:
    return request.app.state.identity


def get_funnel(request: Request) -> EscalationFunnel:
    return request.app.state.funnel


def get_twiml(request: Request) -> TwimlBuilder:
    return request.app.state.twiml


def token_matches(expected: Optional[str], presented: Optional[str]) -> bool:
    """True when no token is configured, or the presented one matches."""
    if not expected:
        return True
    if not presented:
        return False
    return secrets.compare_digest(expected.encode(), presented.encode())


async def require_dashboard_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Guard for the dashboard API. Open when DASHBOARD_API_TOKEN is unset;
    otherwise requires `Authorization: Bearer <token>`.
    """
    presented = credentials.credentials if credentials else None
    if not token_matches(settings.dashboard_api_token, presented):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing dashboard token",
            headers={"WWW-Authenticate": "Bearer"},
        )
