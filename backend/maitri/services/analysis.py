"""
Maitri - Speech / LLM Analysis Service

Turns a telephony recording reference into a triage analysis: severity
(1-5), category, a spoken response, and an emergency reason.

Architecture:
    - Protocol defines the interface the escalation funnel depends on
    - MockAnalysisService: canned Hindi responses, no external calls
    - OpenAIAnalysisService: download recording → Whisper → chat completion (JSON)

The external pipeline is treated as unreliable: any failure inside
OpenAIAnalysisService degrades to a fixed fallback analysis, keeping a real
transcription when one was obtained so local keyword checks still run.
"""

from __future__ import annotations

import json
import logging
import random
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

import httpx
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError, field_validator

from maitri.config import Settings
from maitri.core.exceptions import (
    ConfigurationError,
    MalformedAnalysisError,
    RecordingDownloadError,
    TranscriptionError,
)
from maitri.core.types import MAX_SEVERITY, MIN_SEVERITY, AnalysisResult, Category

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class AnalysisService(Protocol):
    """Analysis collaborator used by the escalation funnel."""

    @abstractmethod
    async def analyze(self, recording_url: Optional[str]) -> AnalysisResult:
        """
        Analyze one recorded speech turn. Never raises: failures degrade to a
        fallback analysis.
        """
        ...

    @abstractmethod
    async def transcribe(self, recording_url: Optional[str]) -> Optional[str]:
        """Plain transcription (used for the village name); None when unavailable."""
        ...

    @property
    @abstractmethod
    def service_id(self) -> str:
        ...


# =============================================================================
# Canned Responses
# =============================================================================

MOCK_RESPONSES = {
    1: "मुझे समझ आ रहा है कि आप चिंतित हैं। आराम करें और पानी पिएं। अगर समस्या बनी रहे तो ASHA कार्यकर्ता से मिलें।",
    2: "आपने फोन किया इसके लिए धन्यवाद। अपने लक्षणों पर ध्यान दें। अगर बिगड़े तो तुरंत ASHA कार्यकर्ता से संपर्क करें।",
    3: "मैं आपकी चिंता समझ रही हूं। इस पर जल्दी ध्यान देना जरूरी है। कल तक स्वास्थ्य केंद्र जाएं।",
    4: "आप जो बता रहे हैं उससे मैं चिंतित हूं। इसके लिए डॉक्टर की जरूरत है। तुरंत ASHA कार्यकर्ता से मिलें।",
    5: "आपकी स्थिति को लेकर मैं बहुत चिंतित हूं। यह गंभीर है और तुरंत इलाज चाहिए। मैं ASHA कार्यकर्ता को अलर्ट कर रही हूं।",
}

MOCK_EMERGENCY_REASONS = {
    4: "लक्षण गंभीर हैं और तुरंत चिकित्सा सहायता की आवश्यकता है",
    5: "जीवन के लिए खतरनाक स्थिति - तत्काल हस्तक्षेप आवश्यक",
}

MOCK_TRANSCRIPTION = "Mock transcription: मुझे तबीयत ठीक नहीं लग रही"

FALLBACK_SEVERITY = 3

MAITRI_SYSTEM_PROMPT = """Role: You are 'Maitri' (मैत्री), a compassionate, non-medical older sister ('Didi') helping rural women in India.

Input: A transcription of a woman's health concern in Hindi or English.

Task:
1. Analyze the symptom severity on a scale of 1-5.
2. Generate a brief, empathetic response (max 2 sentences) in Hindi. Do NOT diagnose. Suggest home care or visiting an ASHA worker.
3. CRITICAL: Output ONLY valid JSON.

JSON Format:
{
  "severity": integer (1-5),
  "category": "string (Maternal/Infant/Menstrual/General)",
  "response_text": "string (The spoken response in Hindi)",
  "emergency_reason": "string or null (If severity > 3, explain why in Hindi)"
}

Severity Guidelines:
- 1-2: Minor concerns (थकान, हल्का दर्द)
- 3: Moderate issues needing attention (तेज दर्द, बुखार)
- 4-5: Emergency situations (भारी रक्तस्राव, सांस की समस्या, प्रसव संबंधी समस्याएं)

Response Style:
- Always respond with empathy and care
- Use simple Hindi that rural women can understand
- Never give medical diagnosis
- Always suggest ASHA worker for serious concerns
- Be culturally sensitive to Indian rural context"""


def build_mock_analysis(
    severity: int,
    category: Category = Category.GENERAL,
    transcription: Optional[str] = MOCK_TRANSCRIPTION,
    source: str = "mock",
) -> AnalysisResult:
    severity = min(max(severity, MIN_SEVERITY), MAX_SEVERITY)
    return AnalysisResult(
        severity=severity,
        category=category,
        response_text=MOCK_RESPONSES[severity],
        emergency_reason=MOCK_EMERGENCY_REASONS.get(severity),
        transcription=transcription,
        source=source,
    )


def fallback_analysis(transcription: Optional[str] = None) -> AnalysisResult:
    """Fixed analysis substituted when the external pipeline fails."""
    return build_mock_analysis(
        FALLBACK_SEVERITY,
        Category.GENERAL,
        transcription=transcription,
        source="fallback",
    )


# =============================================================================
# Mock Implementation
# =============================================================================

class MockAnalysisService:
    """
    Analysis without external calls.

    With severity/category unset, each call draws them at random (demo mode).
    Tests pin them to drive the funnel deterministically.
    """

    def __init__(
        self,
        severity: Optional[int] = None,
        category: Optional[Category] = None,
        transcription: Optional[str] = MOCK_TRANSCRIPTION,
        village_name: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self.severity = severity
        self.category = category
        self.transcription = transcription
        self.village_name = village_name
        self._rng = rng or random.Random()
        self.call_count = 0

    @property
    def service_id(self) -> str:
        return "mock-analysis-v1"

    async def analyze(self, recording_url: Optional[str]) -> AnalysisResult:
        self.call_count += 1
        severity = self.severity or self._rng.randint(MIN_SEVERITY, MAX_SEVERITY)
        category = self.category or self._rng.choice(list(Category))
        return build_mock_analysis(severity, category, transcription=self.transcription)

    async def transcribe(self, recording_url: Optional[str]) -> Optional[str]:
        return self.village_name


# =============================================================================
# OpenAI Implementation
# =============================================================================

class LLMTriageOutput(BaseModel):
    """JSON contract the chat model is prompted to produce."""

    severity: int = Field(ge=MIN_SEVERITY, le=MAX_SEVERITY)
    category: Category = Category.GENERAL
    response_text: str = Field(min_length=1)
    emergency_reason: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def clamp_severity(cls, value):
        return min(max(int(value), MIN_SEVERITY), MAX_SEVERITY)

    @field_validator("category", mode="before")
    @classmethod
    def lenient_category(cls, value):
        return Category.parse(value)


class OpenAIAnalysisService:
    """
    Whisper transcription + chat-completion triage.

    Recordings are fetched from the telephony platform with HTTP basic auth
    (Twilio account SID / auth token).
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if client is None and not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the openai analysis backend")

        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.openai_timeout_seconds,
            max_retries=settings.openai_max_retries,
        )
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.openai_timeout_seconds,
            follow_redirects=True,
        )

    @property
    def service_id(self) -> str:
        return f"openai:{self._settings.openai_transcription_model}+{self._settings.openai_chat_model}"

    async def aclose(self) -> None:
        await self._http.aclose()
        await self._client.close()

    async def analyze(self, recording_url: Optional[str]) -> AnalysisResult:
        transcription: Optional[str] = None
        try:
            transcription = await self._transcribe_or_raise(recording_url)
            return await self._triage(transcription)
        except Exception as e:
            logger.error(
                "Analysis pipeline failed (%s), using fallback analysis: %s",
                type(e).__name__, str(e),
            )
            return fallback_analysis(transcription)

    async def transcribe(self, recording_url: Optional[str]) -> Optional[str]:
        try:
            return await self._transcribe_or_raise(recording_url)
        except Exception as e:
            logger.warning("Transcription failed (%s): %s", type(e).__name__, str(e))
            return None

    # -------------------------------------------------------------------------
    # Pipeline stages
    # -------------------------------------------------------------------------

    async def _download_recording(self, recording_url: str) -> bytes:
        auth = None
        if self._settings.twilio_account_sid and self._settings.twilio_auth_token:
            auth = (self._settings.twilio_account_sid, self._settings.twilio_auth_token)

        try:
            response = await self._http.get(recording_url, auth=auth)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RecordingDownloadError(f"Failed to download recording: {e}") from e

        return response.content

    async def _transcribe_or_raise(self, recording_url: Optional[str]) -> str:
        if not recording_url:
            raise TranscriptionError("No recording URL provided")

        audio = await self._download_recording(recording_url)
        result = await self._client.audio.transcriptions.create(
            file=("recording.wav", audio, "audio/wav"),
            model=self._settings.openai_transcription_model,
            language=self._settings.transcription_language,
        )
        text = (result.text or "").strip()
        if not text:
            raise TranscriptionError("Transcription was empty")

        logger.debug("Transcribed %d characters", len(text))
        return text

    async def _triage(self, transcription: str) -> AnalysisResult:
        response = await self._client.chat.completions.create(
            model=self._settings.openai_chat_model,
            messages=[
                {"role": "system", "content": MAITRI_SYSTEM_PROMPT},
                {"role": "user", "content": transcription},
            ],
            temperature=0.7,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        output = parse_llm_output(content)

        return AnalysisResult(
            severity=output.severity,
            category=output.category,
            response_text=output.response_text,
            emergency_reason=output.emergency_reason,
            transcription=transcription,
            source="openai",
        )


def parse_llm_output(content: str) -> LLMTriageOutput:
    """
    Raises:
        MalformedAnalysisError: content is not JSON or misses required fields
    """
    try:
        return LLMTriageOutput.model_validate(json.loads(content))
    except (json.JSONDecodeError, ValidationError, TypeError, ValueError) as e:
        raise MalformedAnalysisError(f"LLM output did not match triage contract: {e}") from e


# =============================================================================
# Factory Function
# =============================================================================

def create_analysis_service(settings: Settings) -> AnalysisService:
    backend = settings.analysis_backend.lower()

    if backend == "mock":
        logger.info("Using mock analysis service")
        return MockAnalysisService()

    if backend == "openai":
        logger.info(
            "Using OpenAI analysis service: transcription=%s, chat=%s",
            settings.openai_transcription_model,
            settings.openai_chat_model,
        )
        return OpenAIAnalysisService(settings)

    raise ConfigurationError(
        f"Unknown analysis backend: {settings.analysis_backend}",
        details={"allowed": ["mock", "openai"]},
    )
