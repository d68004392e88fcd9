"""
Maitri - Test Configuration and Fixtures

Shared fixtures for all test modules. No fixture contacts OpenAI or
Twilio: the mock analysis service and in-memory storage are injected.
"""

import os
import sys
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from maitri.config import Settings
from maitri.core.storage import InMemoryStorage
from maitri.core.types import Category, EmergencyAlertEvent
from maitri.services.analysis import MockAnalysisService
from maitri.telephony.funnel import EscalationFunnel
from maitri.telephony.privacy import CallerIdentity, PhoneCipher
from maitri.telephony.turns import ConversationTurnCounter


TEST_ENCRYPTION_KEY = "0f" * 32
TEST_SALT = "test-salt"
CALLER_PHONE = "+918340570832"
OTHER_PHONE = "+919876543210"


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    In-memory storage, mock analysis, signature validation skipped (testing env).
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        storage_backend="memory",
        analysis_backend="mock",
        encryption_key=TEST_ENCRYPTION_KEY,
        phone_hash_salt=TEST_SALT,
        twilio_account_sid=None,
        twilio_auth_token=None,
        twilio_phone_number=None,
        dashboard_api_token=None,
        openai_api_key=None,
    )


# =============================================================================
# Component Fixtures
# =============================================================================

class RecordingNotifier:
    """Notifier double that remembers every broadcast event."""

    def __init__(self, fail: bool = False):
        self.events: List[EmergencyAlertEvent] = []
        self.fail = fail

    async def broadcast(self, event: EmergencyAlertEvent) -> int:
        if self.fail:
            raise RuntimeError("push channel down")
        self.events.append(event)
        return 1


@pytest.fixture
def storage() -> InMemoryStorage:
    """Create a fresh in-memory store."""
    return InMemoryStorage()


@pytest.fixture
def cipher() -> PhoneCipher:
    return PhoneCipher(bytes.fromhex(TEST_ENCRYPTION_KEY))


@pytest.fixture
def identity(cipher: PhoneCipher) -> CallerIdentity:
    return CallerIdentity(cipher, TEST_SALT)


@pytest.fixture
def analysis() -> MockAnalysisService:
    """
    Deterministic mock analysis: severity 2, Maternal, no village.

    Tests change .severity / .village_name to drive other branches.
    """
    return MockAnalysisService(severity=2, category=Category.MATERNAL)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def funnel(
    storage: InMemoryStorage,
    analysis: MockAnalysisService,
    identity: CallerIdentity,
    notifier: RecordingNotifier,
) -> EscalationFunnel:
    """Funnel wired to in-memory doubles, default turn bound and threshold."""
    return EscalationFunnel(
        storage=storage,
        analysis=analysis,
        identity=identity,
        notifier=notifier,
        turns=ConversationTurnCounter(max_turns=5),
        emergency_threshold=4,
    )


# =============================================================================
# FastAPI App Fixtures
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, storage: InMemoryStorage, analysis: MockAnalysisService):
    """Create a FastAPI app sharing the test's storage and analysis doubles."""
    # Import here so sys.path is set up first
    from main import create_app

    return create_app(test_settings, storage=storage, analysis=analysis)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client; the context manager runs the app lifespan."""
    with TestClient(app) as c:
        yield c


def voice_form(call_sid: str = "CA0001", phone: str = CALLER_PHONE, recording_url: str = None) -> dict:
    """Twilio-style form body for a voice webhook."""
    form = {"CallSid": call_sid, "From": phone, "To": "+911140000000"}
    if recording_url is not None:
        form["RecordingUrl"] = recording_url
    return form
