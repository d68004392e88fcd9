"""
Maitri - Services Package

Wrappers around external collaborators and local detectors:
- analysis: speech-to-text + LLM triage (OpenAI) or canned mock
- keywords: emergency and goodbye phrase detection

Design Pattern:
    Each collaborator defines a Protocol and one or more implementations.
    The funnel receives a concrete implementation at startup, so tests can
    inject a deterministic mock.
"""

from .analysis import (
    AnalysisService,
    MockAnalysisService,
    OpenAIAnalysisService,
    create_analysis_service,
    fallback_analysis,
)
from .keywords import detect_emergency_keywords, wants_to_end_call

__all__ = [
    # Analysis
    "AnalysisService",
    "MockAnalysisService",
    "OpenAIAnalysisService",
    "create_analysis_service",
    "fallback_analysis",
    # Keywords
    "detect_emergency_keywords",
    "wants_to_end_call",
]
