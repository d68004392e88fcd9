"""
Maitri - Backend Application Package

IVR health-triage intake funnel:
- Telephony webhooks (greet, record, analyze, escalate)
- Speech/LLM analysis service wrappers
- Phone-number anonymization
- Dashboard REST API and real-time alert stream
"""

__version__ = "0.1.0"
