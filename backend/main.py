"""
Maitri - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from maitri import __version__
from maitri.api import health, routes, websocket
from maitri.config import Settings, get_settings
from maitri.core.exceptions import MaitriError
from maitri.core.logging import setup_structured_logging
from maitri.core.storage import Storage, create_storage
from maitri.services.analysis import AnalysisService, create_analysis_service
from maitri.telephony import router as ivr
from maitri.telephony.funnel import create_funnel
from maitri.telephony.privacy import CallerIdentity, PhoneCipher
from maitri.telephony.twiml import TwimlBuilder

logger = logging.getLogger(__name__)


def build_lifespan(
    settings: Settings,
    storage: Optional[Storage] = None,
    analysis: Optional[AnalysisService] = None,
):
    """
    Lifespan bound to one settings object; pre-built collaborators
    (tests) replace the configured backends.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # === Startup ===
        logger.info("Maitri starting in %s mode", settings.app_env)

        app.state.settings = settings
        app.state.storage = storage or create_storage(settings)
        app.state.analysis = analysis or create_analysis_service(settings)
        app.state.identity = CallerIdentity(
            PhoneCipher.from_settings(settings.encryption_key),
            settings.phone_hash_salt,
        )
        app.state.broadcaster = websocket.AlertBroadcaster()
        app.state.twiml = TwimlBuilder.from_settings(settings)
        app.state.funnel = create_funnel(
            settings,
            storage=app.state.storage,
            analysis=app.state.analysis,
            identity=app.state.identity,
            notifier=app.state.broadcaster,
        )

        logger.info(
            "Components ready: storage=%s, analysis=%s, max_turns=%d, threshold=%d",
            settings.storage_backend if storage is None else type(storage).__name__,
            app.state.analysis.service_id,
            settings.max_conversation_turns,
            settings.emergency_severity_threshold,
        )

        yield

        # === Shutdown ===
        logger.info("Maitri shutting down")
        aclose = getattr(app.state.analysis, "aclose", None)
        if aclose is not None:
            await aclose()
        dispose = getattr(app.state.storage, "dispose", None)
        if dispose is not None:
            dispose()
        logger.info("Shutdown complete")

    return lifespan


async def maitri_error_handler(request: Request, exc: MaitriError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message},
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[Storage] = None,
    analysis: Optional[AnalysisService] = None,
) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()
    setup_structured_logging(settings.app_log_level, settings.log_json_format)

    app = FastAPI(
        title="Maitri",
        description="IVR health-triage line with ASHA worker escalation",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=build_lifespan(settings, storage=storage, analysis=analysis),
    )
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    app.add_exception_handler(MaitriError, maitri_error_handler)

    # --- Routes ---
    app.include_router(ivr.router)
    app.include_router(ivr.operator_router)
    app.include_router(routes.router, prefix="/api")
    app.include_router(health.router)
    app.include_router(websocket.router)

    @app.get("/")
    async def root():
        """Root health check."""
        return {
            "service": "Maitri",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()
