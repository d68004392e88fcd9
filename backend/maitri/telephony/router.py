"""
Maitri - IVR Webhook Endpoints

HTTP webhooks the telephony platform calls as the conversation advances:

    /ivr/incoming              greeting + record
    /ivr/process-audio         first speech turn
    /ivr/continue-conversation follow-up turns (goodbye + turn bound)
    /ivr/break-glass-confirm   village capture + dashboard push
    /ivr/status                call status callback (clears per-call state)

Every voice webhook answers with TwiML, including on failure: the caller
always hears the fallback apology instead of a dead line.

Operator endpoints (/ivr/make-call) sit on a separate router guarded by the
dashboard token instead of the Twilio signature.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from pydantic import ValidationError
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from maitri.api.dependencies import get_funnel, get_settings, get_twiml, require_dashboard_token
from maitri.config import Settings
from maitri.core.exceptions import InvalidWebhookPayloadError, InvalidWebhookSignatureError
from maitri.core.logging import LogContext
from maitri.core.types import TurnDecision, TurnOutcome
from .funnel import EscalationFunnel
from .models import CallStatusCallback, MakeCallRequest, MakeCallResponse, VoiceWebhook
from .privacy import mask_phone_number
from .twiml import TwimlBuilder

logger = logging.getLogger(__name__)

TWIML_MEDIA_TYPE = "application/xml"


# =============================================================================
# Request Parsing
# =============================================================================

async def read_webhook_params(request: Request) -> Dict[str, Any]:
    """
    Webhook body as a flat dict.

    Supports:
    - Form-encoded body (Twilio default)
    - JSON body
    """
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        body = await request.json()
        if not isinstance(body, dict):
            raise InvalidWebhookPayloadError("Webhook JSON body must be an object")
        return body

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


async def parse_voice_webhook(request: Request) -> VoiceWebhook:
    try:
        return VoiceWebhook.model_validate(await read_webhook_params(request))
    except ValidationError as e:
        raise InvalidWebhookPayloadError(
            "Invalid voice webhook body",
            details={"fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
        ) from e


def webhook_url(request: Request, settings: Settings) -> str:
    """URL Twilio signed: the public base URL when behind a proxy, else the request URL."""
    if settings.public_base_url:
        url = settings.public_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url += "?" + request.url.query
        return url
    return str(request.url)


def twiml_response(document: str) -> Response:
    return Response(content=document, media_type=TWIML_MEDIA_TYPE)


# =============================================================================
# Dependencies
# =============================================================================

async def verify_twilio_signature(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Reject webhooks not signed by Twilio.

    Skipped in development/testing or when no auth token is configured.
    """
    if not settings.validate_twilio_signature or settings.is_development:
        return
    if not settings.twilio_auth_token:
        logger.warning("TWILIO_AUTH_TOKEN not set - webhook signature validation skipped")
        return

    signature = request.headers.get("X-Twilio-Signature")
    if not signature:
        raise InvalidWebhookSignatureError("Missing X-Twilio-Signature header")

    validator = RequestValidator(settings.twilio_auth_token)
    params = await read_webhook_params(request)
    if not validator.validate(webhook_url(request, settings), params, signature):
        logger.warning("Rejected webhook with invalid Twilio signature: path=%s", request.url.path)
        raise InvalidWebhookSignatureError("Invalid Twilio signature")


router = APIRouter(
    prefix="/ivr",
    tags=["ivr"],
    dependencies=[Depends(verify_twilio_signature)],
)

operator_router = APIRouter(
    prefix="/ivr",
    tags=["ivr"],
    dependencies=[Depends(require_dashboard_token)],
)


# =============================================================================
# Voice Webhooks
# =============================================================================

@router.post(
    "/incoming",
    summary="Handle incoming call",
    description="Greets the caller and records their concern.",
)
async def handle_incoming_call(
    request: Request,
    funnel: EscalationFunnel = Depends(get_funnel),
    twiml: TwimlBuilder = Depends(get_twiml),
) -> Response:
    """
    Creates the anonymized call log and returns the greeting document.

    Idempotent: a retried webhook with the same CallSid reuses the call log.
    """
    try:
        webhook = await parse_voice_webhook(request)
        with LogContext(call_sid=webhook.call_sid):
            logger.info("Incoming call: from=%s", mask_phone_number(webhook.from_number))
            await funnel.start_call(webhook.call_sid, webhook.from_number)
            return twiml_response(twiml.greeting())
    except Exception:
        logger.exception("Error handling incoming call")
        return twiml_response(twiml.fallback())


@router.post(
    "/process-audio",
    summary="Process first speech turn",
    description="Analyzes the caller's first recording and responds or escalates.",
)
async def handle_process_audio(
    request: Request,
    funnel: EscalationFunnel = Depends(get_funnel),
    twiml: TwimlBuilder = Depends(get_twiml),
) -> Response:
    return await _handle_speech_turn(request, funnel, twiml, continuation=False)


@router.post(
    "/continue-conversation",
    summary="Process follow-up speech turn",
    description="Handles follow-up questions until goodbye, escalation or the turn bound.",
)
async def handle_continue_conversation(
    request: Request,
    funnel: EscalationFunnel = Depends(get_funnel),
    twiml: TwimlBuilder = Depends(get_twiml),
) -> Response:
    return await _handle_speech_turn(request, funnel, twiml, continuation=True)


async def _handle_speech_turn(
    request: Request,
    funnel: EscalationFunnel,
    twiml: TwimlBuilder,
    continuation: bool,
) -> Response:
    try:
        webhook = await parse_voice_webhook(request)
        with LogContext(call_sid=webhook.call_sid):
            outcome = await funnel.process_turn(
                webhook.call_sid,
                webhook.from_number,
                webhook.recording_url,
                continuation=continuation,
            )
            return twiml_response(render_turn(outcome, twiml))
    except Exception:
        logger.exception("Error processing speech turn")
        return twiml_response(twiml.fallback())


def render_turn(outcome: TurnOutcome, twiml: TwimlBuilder) -> str:
    """Map a funnel decision to the document the caller hears next."""
    if outcome.decision == TurnDecision.ESCALATE:
        return twiml.village_request()
    if outcome.decision == TurnDecision.CALLER_ENDED:
        return twiml.goodbye()
    if outcome.decision == TurnDecision.TURN_LIMIT:
        return twiml.turn_limit_reached()
    if outcome.decision == TurnDecision.END:
        return twiml.final_advice(outcome.response_text or "")
    return twiml.advice(outcome.response_text or "")


@router.post(
    "/break-glass-confirm",
    summary="Confirm emergency escalation",
    description="Captures the caller's village and pushes the alert to dashboards.",
)
async def handle_break_glass_confirm(
    request: Request,
    funnel: EscalationFunnel = Depends(get_funnel),
    twiml: TwimlBuilder = Depends(get_twiml),
) -> Response:
    """
    The caller hears the confirmation even when the workflow fails;
    failures are logged by the funnel.
    """
    try:
        webhook = await parse_voice_webhook(request)
        with LogContext(call_sid=webhook.call_sid):
            event = await funnel.confirm_break_glass(
                webhook.call_sid,
                webhook.from_number,
                webhook.recording_url,
            )
            if event is None:
                logger.error("Break-glass completed without a dashboard event")
            if webhook.call_sid:
                await funnel.end_call(webhook.call_sid)
            return twiml_response(twiml.emergency_confirmation())
    except Exception:
        logger.exception("Error in break-glass confirmation")
        return twiml_response(twiml.fallback())


# =============================================================================
# Call Lifecycle
# =============================================================================

@router.post(
    "/status",
    summary="Handle call status update",
    description="Status callback; final statuses clear the call's turn counter.",
)
async def handle_status_update(
    request: Request,
    funnel: EscalationFunnel = Depends(get_funnel),
) -> dict:
    try:
        update = CallStatusCallback.model_validate(await read_webhook_params(request))
    except ValidationError as e:
        raise InvalidWebhookPayloadError("Invalid status callback body") from e

    with LogContext(call_sid=update.call_sid):
        logger.info("Call status: %s (duration=%s)", update.status.value, update.duration)
        if update.status.is_final:
            await funnel.end_call(update.call_sid)

    return {"status": "acknowledged", "call_status": update.status.value}


# =============================================================================
# Operator Endpoints
# =============================================================================

@operator_router.post(
    "/make-call",
    response_model=MakeCallResponse,
    response_model_exclude_none=True,
    summary="Place outbound test call",
    description="Dials a number and connects it to the IVR flow (operator testing).",
)
async def make_outbound_call(
    body: MakeCallRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
) -> MakeCallResponse:
    if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_phone_number):
        return MakeCallResponse(success=False, error="Twilio credentials are not configured")

    base_url = (settings.public_base_url or str(request.base_url)).rstrip("/")
    client = Client(settings.twilio_account_sid, settings.twilio_auth_token)

    try:
        call = await run_in_threadpool(
            client.calls.create,
            to=body.to,
            from_=settings.twilio_phone_number,
            url=f"{base_url}/ivr/incoming",
            status_callback=f"{base_url}/ivr/status",
            method="POST",
        )
    except TwilioRestException as e:
        logger.error("Outbound call failed: to=%s, error=%s", mask_phone_number(body.to), e.msg)
        return MakeCallResponse(success=False, error=e.msg)

    logger.info("Outbound call placed: to=%s", mask_phone_number(body.to))
    return MakeCallResponse(success=True, call_sid=call.sid, status=call.status)
