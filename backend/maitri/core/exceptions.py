"""
Maitri - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class MaitriError(Exception):
    """Base exception for all Maitri errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Analysis Errors
# =============================================================================

class AnalysisError(MaitriError):
    """Error in the speech/LLM analysis collaborator."""
    code = "ANALYSIS_ERROR"
    status_code = 502


class RecordingDownloadError(AnalysisError):
    """Recording could not be fetched from the telephony platform."""
    code = "RECORDING_DOWNLOAD_ERROR"


class TranscriptionError(AnalysisError):
    """Error during audio transcription."""
    code = "TRANSCRIPTION_ERROR"


class MalformedAnalysisError(AnalysisError):
    """LLM returned output that does not match the triage contract."""
    code = "MALFORMED_ANALYSIS"


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(MaitriError):
    """Error in the persistence layer."""
    code = "STORAGE_ERROR"
    status_code = 500


class RecordNotFoundError(StorageError):
    """Requested record does not exist."""
    code = "RECORD_NOT_FOUND"
    status_code = 404


class CallLogNotFoundError(RecordNotFoundError):
    """Call log not found."""
    code = "CALL_LOG_NOT_FOUND"


# =============================================================================
# Privacy Errors
# =============================================================================

class PrivacyError(MaitriError):
    """Error in phone anonymization."""
    code = "PRIVACY_ERROR"
    status_code = 500


class DecryptionError(PrivacyError):
    """Encrypted phone value could not be decrypted or failed authentication."""
    code = "DECRYPTION_ERROR"


# =============================================================================
# Telephony Errors
# =============================================================================

class TelephonyError(MaitriError):
    """Error in telephony subsystem."""
    code = "TELEPHONY_ERROR"
    status_code = 502


class InvalidWebhookSignatureError(TelephonyError):
    """Webhook did not carry a valid provider signature."""
    code = "INVALID_WEBHOOK_SIGNATURE"
    status_code = 403


class InvalidWebhookPayloadError(TelephonyError):
    """Webhook body could not be parsed."""
    code = "INVALID_WEBHOOK_PAYLOAD"
    status_code = 400


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(MaitriError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
