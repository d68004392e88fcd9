"""
Maitri - Escalation Funnel Tests

Tests for the turn decision policy and break-glass workflow, driven by the
deterministic mock analysis service.
These tests verify:
- Call start anonymizes the caller
- Below-threshold turns continue and never create alerts
- Emergency turns create exactly one pending alert
- Keyword override and severity ratchet
- Turn bound and goodbye handling
- Break-glass village capture, de-anonymization and push
- Failure isolation (alert creation, broadcast)

Run with: pytest tests/test_funnel.py -v
"""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from maitri.core.exceptions import StorageError
from maitri.core.types import AlertStatus, Category, TurnDecision
from maitri.telephony import funnel as funnel_module
from maitri.telephony.funnel import EscalationFunnel
from maitri.telephony.turns import ConversationTurnCounter

from conftest import CALLER_PHONE, OTHER_PHONE, RecordingNotifier

RECORDING = "https://api.twilio.com/Recordings/RE1"


class TestStartCall:
    """Tests for the incoming-call step."""

    @pytest.mark.asyncio
    async def test_creates_anonymized_call_log(self, funnel: EscalationFunnel, storage, identity):
        call_log = await funnel.start_call("CA1", CALLER_PHONE)

        assert call_log.call_sid == "CA1"
        assert call_log.caller_hash == identity.hash(CALLER_PHONE)
        assert CALLER_PHONE not in call_log.encrypted_phone
        assert identity.decrypt(call_log.encrypted_phone) == CALLER_PHONE
        assert call_log.severity_level == 0
        assert call_log.category == Category.GENERAL
        assert call_log.is_break_glass is False

    @pytest.mark.asyncio
    async def test_retried_webhook_reuses_call_log(self, funnel: EscalationFunnel, storage):
        first = await funnel.start_call("CA1", CALLER_PHONE)
        second = await funnel.start_call("CA1", CALLER_PHONE)

        assert first.id == second.id
        assert len(await storage.list_call_logs()) == 1


class TestSpeechTurns:
    """Tests for the per-turn decision policy."""

    @pytest.mark.asyncio
    async def test_low_severity_continues_without_alert(self, funnel: EscalationFunnel, storage):
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        assert outcome.decision == TurnDecision.CONTINUE
        assert outcome.turn == 1
        assert outcome.call_log.severity_level == 2
        assert outcome.call_log.category == Category.MATERNAL
        assert outcome.call_log.ai_response == outcome.response_text
        assert await storage.list_alerts() == []

    @pytest.mark.asyncio
    async def test_emergency_creates_one_pending_alert(self, funnel: EscalationFunnel, storage, analysis):
        analysis.severity = 5
        call_log = await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        assert outcome.decision == TurnDecision.ESCALATE
        assert outcome.alert is not None
        alerts = await storage.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].call_id == call_log.id
        assert alerts[0].status == AlertStatus.PENDING
        assert alerts[0].emergency_reason

    @pytest.mark.asyncio
    async def test_threshold_severity_escalates(self, funnel: EscalationFunnel, analysis):
        analysis.severity = 4
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)
        assert outcome.decision == TurnDecision.ESCALATE

    @pytest.mark.asyncio
    async def test_repeated_emergency_turns_keep_one_alert(self, funnel: EscalationFunnel, storage, analysis):
        analysis.severity = 5
        await funnel.start_call("CA1", CALLER_PHONE)

        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)
        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        assert len(await storage.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_keyword_overrides_low_model_severity(self, funnel: EscalationFunnel, storage, analysis):
        analysis.severity = 1
        analysis.transcription = "मुझे बहुत खून बह रहा है"
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        assert outcome.decision == TurnDecision.ESCALATE
        assert outcome.call_log.severity_level == 4
        alert = (await storage.list_alerts())[0]
        assert alert.emergency_reason.startswith("Emergency keyword detected")

    @pytest.mark.asyncio
    async def test_keyword_never_lowers_model_severity(self, funnel: EscalationFunnel, analysis):
        analysis.severity = 5
        analysis.transcription = "पेट में तेज दर्द"
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)
        assert outcome.call_log.severity_level == 5

    @pytest.mark.asyncio
    async def test_severity_only_ratchets_up(self, funnel: EscalationFunnel, analysis):
        await funnel.start_call("CA1", CALLER_PHONE)
        analysis.severity = 3
        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        analysis.severity = 1
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        assert outcome.call_log.severity_level == 3

    @pytest.mark.asyncio
    async def test_missing_transcription_records_recording_reference(self, funnel: EscalationFunnel, analysis):
        analysis.transcription = None
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)
        assert outcome.call_log.transcription == f"Recording URL: {RECORDING}"

    @pytest.mark.asyncio
    async def test_turn_bound(self, funnel: EscalationFunnel, storage):
        await funnel.start_call("CA1", CALLER_PHONE)

        decisions = [(await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)).decision]
        for _ in range(5):
            outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)
            decisions.append(outcome.decision)

        assert decisions == [
            TurnDecision.CONTINUE,
            TurnDecision.CONTINUE,
            TurnDecision.CONTINUE,
            TurnDecision.CONTINUE,
            TurnDecision.END,
            TurnDecision.TURN_LIMIT,
        ]
        assert await storage.list_alerts() == []

    @pytest.mark.asyncio
    async def test_turn_limit_skips_analysis(self, storage, analysis, identity, notifier):
        funnel = EscalationFunnel(storage, analysis, identity, notifier, ConversationTurnCounter(max_turns=1))
        await funnel.start_call("CA1", CALLER_PHONE)

        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        assert outcome.decision == TurnDecision.TURN_LIMIT
        assert analysis.call_count == 1

    @pytest.mark.asyncio
    async def test_goodbye_on_continuation_ends_call(self, funnel: EscalationFunnel, analysis):
        await funnel.start_call("CA1", CALLER_PHONE)
        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        analysis.transcription = "ठीक है, धन्यवाद"
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        assert outcome.decision == TurnDecision.CALLER_ENDED
        assert await funnel.turns.current("CA1") == 0

    @pytest.mark.asyncio
    async def test_goodbye_turn_is_stored(self, funnel: EscalationFunnel, analysis, storage):
        await funnel.start_call("CA1", CALLER_PHONE)
        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        analysis.transcription = "ठीक है, धन्यवाद"
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        stored = await storage.get_call_log(outcome.call_log.id)
        assert stored.transcription == "ठीक है, धन्यवाद"
        assert stored.ai_response == outcome.analysis.response_text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transcription", [
        "बहुत खून बह रहा है, बंद नहीं हो रहा",
        "heavy bleeding and it won't stop",
        "she fainted, please stop talking and send help",
    ])
    async def test_goodbye_word_never_cancels_emergency(
        self, funnel: EscalationFunnel, analysis, storage, transcription: str
    ):
        await funnel.start_call("CA1", CALLER_PHONE)
        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        analysis.severity = 5
        analysis.transcription = transcription
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        assert outcome.decision == TurnDecision.ESCALATE
        alerts = await storage.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].status == AlertStatus.PENDING

    @pytest.mark.asyncio
    async def test_emergency_keyword_beats_goodbye_on_low_model_score(
        self, funnel: EscalationFunnel, analysis, storage
    ):
        await funnel.start_call("CA1", CALLER_PHONE)
        await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        analysis.transcription = "heavy bleeding, it will not stop"
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING, continuation=True)

        assert outcome.decision == TurnDecision.ESCALATE
        assert outcome.analysis.severity == 4
        assert len(await storage.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_goodbye_ignored_on_first_turn(self, funnel: EscalationFunnel, analysis):
        analysis.transcription = "thank you"
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)
        assert outcome.decision == TurnDecision.CONTINUE

    @pytest.mark.asyncio
    async def test_missed_incoming_webhook_creates_call_log(self, funnel: EscalationFunnel, storage):
        outcome = await funnel.process_turn("CA9", CALLER_PHONE, RECORDING)

        assert outcome.call_log.call_sid == "CA9"
        assert len(await storage.list_call_logs()) == 1

    @pytest.mark.asyncio
    async def test_call_sid_separates_calls_from_same_caller(self, funnel: EscalationFunnel, storage, analysis):
        first = await funnel.start_call("CA1", CALLER_PHONE)
        second = await funnel.start_call("CA2", CALLER_PHONE)

        analysis.severity = 5
        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        assert outcome.call_log.id == first.id
        assert (await storage.get_call_log(second.id)).severity_level == 0

    @pytest.mark.asyncio
    async def test_missing_call_sid_falls_back_to_caller_hash(self, funnel: EscalationFunnel, storage):
        started = await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn(None, CALLER_PHONE, RECORDING)

        assert outcome.call_log.id == started.id
        assert len(await storage.list_call_logs()) == 1

    @pytest.mark.asyncio
    async def test_alert_creation_failure_does_not_abort(self, funnel: EscalationFunnel, storage, analysis, monkeypatch):
        async def broken_ensure_alert(call_id, reason):
            raise StorageError("database is locked")

        monkeypatch.setattr(storage, "ensure_alert", broken_ensure_alert)
        analysis.severity = 5
        await funnel.start_call("CA1", CALLER_PHONE)

        outcome = await funnel.process_turn("CA1", CALLER_PHONE, RECORDING)

        assert outcome.decision == TurnDecision.ESCALATE
        assert outcome.alert is None


class TestBreakGlass:
    """Tests for village capture and the dashboard push."""

    async def _escalate(self, funnel, analysis, call_sid="CA1", phone=CALLER_PHONE):
        analysis.severity = 5
        await funnel.start_call(call_sid, phone)
        return await funnel.process_turn(call_sid, phone, RECORDING)

    @pytest.mark.asyncio
    async def test_pushes_masked_event(self, funnel: EscalationFunnel, analysis, notifier: RecordingNotifier, storage):
        analysis.village_name = "Rampur"
        outcome = await self._escalate(funnel, analysis)

        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)

        assert notifier.events == [event]
        assert event.alert_id == outcome.alert.id
        assert event.masked_phone == "****-****-0832"
        assert CALLER_PHONE not in str(event.to_message())
        assert event.village_name == "Rampur"
        assert event.severity_level == 5
        assert event.category == "Maternal"

        call_log = await storage.get_call_log(outcome.call_log.id)
        assert call_log.is_break_glass is True
        assert call_log.village_location == "Rampur"

    @pytest.mark.asyncio
    async def test_message_shape(self, funnel: EscalationFunnel, analysis):
        await self._escalate(funnel, analysis)
        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)

        message = event.to_message()
        assert message["type"] == "emergency_alert"
        assert set(message["data"]) == {
            "id", "phoneNumber", "villageName", "timestamp",
            "severityLevel", "category", "emergencyReason",
        }
        assert message["data"]["timestamp"].endswith(("AM", "PM"))

    @pytest.mark.asyncio
    async def test_village_falls_back_to_recording_reference(self, funnel: EscalationFunnel, analysis):
        await self._escalate(funnel, analysis)

        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, "https://rec/village")
        assert event.village_name == "Village Recording: https://rec/village"

    @pytest.mark.asyncio
    async def test_recreates_missing_alert(self, funnel: EscalationFunnel, storage, analysis, monkeypatch):
        original = storage.ensure_alert
        calls = {"n": 0}

        async def flaky_ensure_alert(call_id, reason):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StorageError("transient failure")
            return await original(call_id, reason)

        monkeypatch.setattr(storage, "ensure_alert", flaky_ensure_alert)
        analysis.village_name = "Rampur"
        outcome = await self._escalate(funnel, analysis)
        assert outcome.alert is None

        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)

        alerts = await storage.list_alerts()
        assert len(alerts) == 1
        assert event.alert_id == alerts[0].id
        assert alerts[0].emergency_reason == "Severity 5 emergency from Rampur"

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_contained(self, storage, analysis, identity):
        funnel = EscalationFunnel(
            storage, analysis, identity, RecordingNotifier(fail=True), ConversationTurnCounter()
        )
        await self._escalate(funnel, analysis)

        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)

        assert event is not None
        assert len(await storage.list_pending_alerts()) == 1

    @pytest.mark.asyncio
    async def test_undecryptable_phone_uses_placeholder(self, funnel: EscalationFunnel, storage, analysis):
        outcome = await self._escalate(funnel, analysis)
        await storage.update_call_log(outcome.call_log.id, encrypted_phone="00:00:00")

        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)

        assert event.masked_phone == "****-****-XXXX"
        assert len(await storage.list_pending_alerts()) == 1

    @pytest.mark.asyncio
    async def test_each_caller_gets_own_event(self, funnel: EscalationFunnel, analysis, notifier):
        await self._escalate(funnel, analysis, "CA1", CALLER_PHONE)
        await self._escalate(funnel, analysis, "CA2", OTHER_PHONE)

        first = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)
        second = await funnel.confirm_break_glass("CA2", OTHER_PHONE, RECORDING)

        assert first.alert_id != second.alert_id
        assert second.masked_phone == "****-****-3210"
        assert len(notifier.events) == 2

    @pytest.mark.asyncio
    async def test_event_time_in_display_zone(self, storage, analysis, identity, notifier, monkeypatch):
        funnel = EscalationFunnel(
            storage, analysis, identity, notifier, ConversationTurnCounter(),
            display_tz=ZoneInfo("Asia/Kolkata"),
        )
        monkeypatch.setattr(funnel_module, "utcnow", lambda: datetime(2024, 3, 10, 9, 37))
        await self._escalate(funnel, analysis)

        event = await funnel.confirm_break_glass("CA1", CALLER_PHONE, RECORDING)

        assert event.timestamp == "3:07 PM"
