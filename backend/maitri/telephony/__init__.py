"""
Maitri - Telephony Module

IVR call flow for the health-triage line.

Components:
- router: Twilio webhooks (/ivr/...)
- funnel: severity-driven escalation decisions
- turns: per-call conversation turn bound
- twiml: call-control documents
- privacy: phone hashing, encryption and masking

PRIVACY NOTICE:
    Caller numbers are stored only as a salted hash plus an encrypted
    token. They are decrypted solely for ASHA workers viewing a pending
    emergency alert.
"""

from .funnel import EscalationFunnel, create_funnel
from .privacy import CallerIdentity, PhoneCipher, hash_phone_number, mask_phone_number
from .turns import ConversationTurnCounter
from .twiml import TwimlBuilder

__all__ = [
    "EscalationFunnel",
    "create_funnel",
    "CallerIdentity",
    "PhoneCipher",
    "ConversationTurnCounter",
    "TwimlBuilder",
    "mask_phone_number",
    "hash_phone_number",
]
