"""
Maitri - Severity-Driven Escalation Funnel

Decides, after each recorded speech turn, whether the call continues,
ends, or escalates to an ASHA worker:

    incoming ──► turn (analyze) ──► severity < threshold ──► advice ──► turn ...
                        │                                        (max 5 turns)
                        └──► severity ≥ threshold ──► alert (PENDING)
                                                  ──► village capture (break-glass)
                                                  ──► de-anonymize + push to dashboards

Every step resolves the call's CallLog by the telephony CallSid. The
most-recent-by-caller-hash lookup is only a fallback when the CallSid is
missing or unknown.

Failure policy:
    Alert creation, decryption and broadcast failures are logged and never
    abort the call flow. The break-glass step re-creates a missing alert so
    every completed break-glass yields exactly one visible alert.
"""

from __future__ import annotations

from datetime import timezone, tzinfo
from typing import Optional, Protocol

from maitri.config import Settings
from maitri.core.exceptions import CallLogNotFoundError
from maitri.core.logging import get_logger
from maitri.core.storage import Storage
from maitri.core.types import (
    Alert,
    AnalysisResult,
    CallLog,
    Category,
    EmergencyAlertEvent,
    TurnDecision,
    TurnOutcome,
    format_clock_time,
    utcnow,
)
from maitri.services.analysis import AnalysisService
from maitri.services.keywords import detect_emergency_keywords, wants_to_end_call
from .privacy import CallerIdentity
from .turns import ConversationTurnCounter

logger = get_logger(__name__)


class AlertNotifier(Protocol):
    """Push channel to connected dashboards."""

    async def broadcast(self, event: EmergencyAlertEvent) -> int:
        """Send to every connected viewer; returns how many received it."""
        ...


class EscalationFunnel:
    """
    Webhook-facing orchestrator for one IVR deployment.

    Owns the turn counter; storage, analysis and notifier are injected.
    """

    def __init__(
        self,
        storage: Storage,
        analysis: AnalysisService,
        identity: CallerIdentity,
        notifier: AlertNotifier,
        turns: ConversationTurnCounter,
        emergency_threshold: int = 4,
        display_tz: tzinfo = timezone.utc,
    ):
        self._storage = storage
        self._analysis = analysis
        self._identity = identity
        self._notifier = notifier
        self._turns = turns
        self._threshold = emergency_threshold
        self._display_tz = display_tz

    @property
    def turns(self) -> ConversationTurnCounter:
        return self._turns

    @property
    def emergency_threshold(self) -> int:
        return self._threshold

    # -------------------------------------------------------------------------
    # Call start
    # -------------------------------------------------------------------------

    async def start_call(self, call_sid: Optional[str], caller_phone: str) -> CallLog:
        """
        Record a new inbound call with the caller's number anonymized.

        Idempotent per CallSid: a retried incoming webhook returns the
        existing call log.
        """
        if call_sid:
            existing = await self._storage.get_call_log_by_sid(call_sid)
            if existing is not None:
                logger.warning("Duplicate incoming webhook for call", data={"call_log_id": existing.id})
                return existing

        call_log = await self._storage.create_call_log(
            CallLog(
                call_sid=call_sid,
                caller_hash=self._identity.hash(caller_phone),
                encrypted_phone=self._identity.encrypt(caller_phone),
                category=Category.GENERAL,
            )
        )
        logger.info("Call log created", data={"call_log_id": call_log.id})
        return call_log

    # -------------------------------------------------------------------------
    # Speech turns
    # -------------------------------------------------------------------------

    async def process_turn(
        self,
        call_sid: Optional[str],
        caller_phone: str,
        recording_url: Optional[str],
        continuation: bool = False,
    ) -> TurnOutcome:
        """
        Run one recorded speech turn through analysis and the decision policy.

        Args:
            call_sid: Telephony call identifier
            caller_phone: Caller number (hashed/encrypted, never stored raw)
            recording_url: Reference to the recorded audio
            continuation: True for follow-up turns, where a goodbye ends a
                non-emergency call

        Returns:
            TurnOutcome describing the branch taken
        """
        turn_key = call_sid or self._identity.hash(caller_phone)
        ticket = await self._turns.register_turn(turn_key)

        if not ticket.allowed:
            logger.info("Maximum conversation turns reached - ending call")
            return TurnOutcome(decision=TurnDecision.TURN_LIMIT, turn=ticket.turn)

        analysis = self.apply_keyword_override(await self._analysis.analyze(recording_url))
        logger.info("Turn analyzed", data={"turn": ticket.turn, **analysis.to_log_dict()})

        call_log = await self._resolve_call_log(call_sid, caller_phone)
        call_log = await self._record_analysis(call_log, analysis, recording_url)

        if analysis.severity >= self._threshold:
            logger.warning(
                "EMERGENCY DETECTED - activating break-glass protocol",
                data={"call_log_id": call_log.id, "severity": analysis.severity},
            )
            alert = await self._try_ensure_alert(call_log, analysis)
            await self._turns.discard(turn_key)
            return TurnOutcome(
                decision=TurnDecision.ESCALATE,
                response_text=analysis.response_text,
                turn=ticket.turn,
                analysis=analysis,
                call_log=call_log,
                alert=alert,
            )

        if continuation and wants_to_end_call(analysis.transcription):
            logger.info("Caller asked to end the conversation", data={"turn": ticket.turn})
            await self._turns.discard(turn_key)
            return TurnOutcome(
                decision=TurnDecision.CALLER_ENDED,
                turn=ticket.turn,
                analysis=analysis,
                call_log=call_log,
            )

        # Last allowed turn keeps its counter entry so any later request is refused
        decision = TurnDecision.END if ticket.is_last else TurnDecision.CONTINUE
        return TurnOutcome(
            decision=decision,
            response_text=analysis.response_text,
            turn=ticket.turn,
            analysis=analysis,
            call_log=call_log,
        )

    def apply_keyword_override(self, analysis: AnalysisResult) -> AnalysisResult:
        """
        Raise severity to the emergency threshold when the transcription
        contains emergency language, whatever the model scored.
        """
        reason = detect_emergency_keywords(analysis.transcription)
        if reason is None:
            return analysis
        if analysis.severity < self._threshold:
            logger.warning(
                "Emergency keyword overrides model severity",
                data={"model_severity": analysis.severity, "threshold": self._threshold},
            )
        return analysis.with_severity_floor(self._threshold, reason)

    # -------------------------------------------------------------------------
    # Break-glass
    # -------------------------------------------------------------------------

    async def confirm_break_glass(
        self,
        call_sid: Optional[str],
        caller_phone: str,
        recording_url: Optional[str],
    ) -> Optional[EmergencyAlertEvent]:
        """
        Capture the village, de-anonymize for responders and push the alert.

        Returns:
            The event pushed to dashboards, or None when the workflow failed
            (the failure is logged; the caller still gets a confirmation).
        """
        try:
            call_log = await self._resolve_call_log(call_sid, caller_phone)
        except Exception:
            logger.exception("CRITICAL: break-glass could not resolve a call log")
            return None

        village_name = await self._capture_village(recording_url)

        try:
            updated = await self._storage.update_call_log(
                call_log.id,
                is_break_glass=True,
                village_location=village_name,
            )
            if updated is None:
                logger.error("CRITICAL: failed to update call log with village", data={"call_log_id": call_log.id})
            else:
                call_log = updated

            alert, created = await self._storage.ensure_alert(
                call_log.id,
                f"Severity {call_log.severity_level} emergency from {village_name}",
            )
            if created:
                logger.warning("No existing alert found - created emergency alert now", data={"alert_id": alert.id})

            event = EmergencyAlertEvent(
                alert_id=alert.id,
                masked_phone=self._identity.masked(call_log.encrypted_phone),
                village_name=village_name,
                timestamp=format_clock_time(utcnow(), self._display_tz),
                severity_level=call_log.severity_level,
                category=Category.parse(call_log.category).value,
                emergency_reason=alert.emergency_reason,
            )
        except Exception:
            # No secondary channel (SMS) exists; the dashboard poll is the only recovery path
            logger.exception("CRITICAL: break-glass workflow error", data={"call_log_id": call_log.id})
            return None

        try:
            delivered = await self._notifier.broadcast(event)
            logger.info(
                "Emergency alert broadcast",
                data={"alert_id": event.alert_id, "viewers": delivered, "severity": event.severity_level},
            )
        except Exception:
            logger.exception("Emergency alert broadcast failed", data={"alert_id": event.alert_id})

        return event

    async def end_call(self, call_sid: str) -> None:
        """Drop per-call state once the platform reports the call finished."""
        if await self._turns.discard(call_sid):
            logger.debug("Turn counter cleared for finished call")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _resolve_call_log(self, call_sid: Optional[str], caller_phone: str) -> CallLog:
        """
        Find the CallLog for this call: by CallSid, then by most recent for the
        caller hash, creating one when neither exists (incoming webhook missed).
        """
        if call_sid:
            found = await self._storage.get_call_log_by_sid(call_sid)
            if found is not None:
                return found

        found = await self._storage.get_latest_call_log_for_caller(self._identity.hash(caller_phone))
        # A log carrying another CallSid belongs to an earlier call from the same number
        if found is not None and (found.call_sid is None or not call_sid):
            if call_sid and found.call_sid is None:
                found = await self._storage.update_call_log(found.id, call_sid=call_sid) or found
            logger.warning("Call log resolved by caller hash", data={"call_log_id": found.id})
            return found

        logger.warning("No call log for this call - creating one")
        return await self.start_call(call_sid, caller_phone)

    async def _record_analysis(
        self,
        call_log: CallLog,
        analysis: AnalysisResult,
        recording_url: Optional[str],
    ) -> CallLog:
        """
        Store the turn on the call log. Severity only ratchets upward so a
        calm follow-up never hides an earlier emergency.
        """
        updates: dict = {
            "transcription": analysis.transcription or f"Recording URL: {recording_url}",
            "ai_response": analysis.response_text,
        }
        if analysis.severity >= call_log.severity_level:
            updates["severity_level"] = analysis.severity
            updates["category"] = analysis.category

        updated = await self._storage.update_call_log(call_log.id, **updates)
        if updated is None:
            raise CallLogNotFoundError(f"Call log {call_log.id} disappeared during update")
        return updated

    async def _try_ensure_alert(self, call_log: CallLog, analysis: AnalysisResult) -> Optional[Alert]:
        reason = analysis.emergency_reason or f"Severity {analysis.severity} emergency detected"
        try:
            alert, created = await self._storage.ensure_alert(call_log.id, reason)
        except Exception:
            # Break-glass retries creation
            logger.exception("CRITICAL: failed to create emergency alert", data={"call_log_id": call_log.id})
            return None

        if created:
            logger.warning("Emergency alert created", data={"alert_id": alert.id})
        else:
            logger.info("Emergency alert already exists for call", data={"alert_id": alert.id})
        return alert

    async def _capture_village(self, recording_url: Optional[str]) -> str:
        village = None
        try:
            village = await self._analysis.transcribe(recording_url)
        except Exception:
            logger.exception("Village transcription failed")

        if village and village.strip():
            return village.strip()
        return f"Village Recording: {recording_url}"


def create_funnel(
    settings: Settings,
    storage: Storage,
    analysis: AnalysisService,
    identity: CallerIdentity,
    notifier: AlertNotifier,
) -> EscalationFunnel:
    return EscalationFunnel(
        storage=storage,
        analysis=analysis,
        identity=identity,
        notifier=notifier,
        turns=ConversationTurnCounter(max_turns=settings.max_conversation_turns),
        emergency_threshold=settings.emergency_severity_threshold,
        display_tz=settings.display_tz,
    )
