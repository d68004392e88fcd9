"""
Maitri - Keyword Detectors

Local scans over a caller's transcription that run independently of the LLM:
- emergency language, which forces escalation whatever the model scored
- goodbye phrases, which end a non-emergency conversation
"""

from __future__ import annotations

import re
from typing import Iterable, Optional


EMERGENCY_KEYWORDS: tuple[str, ...] = (
    # Severe bleeding
    "बहुत खून", "अधिक रक्तस्राव", "भारी रक्तस्राव", "खून बह रहा",
    # Severe pain
    "तेज दर्द", "असहनीय दर्द", "बहुत दर्द", "पेट में तेज दर्द",
    # Pregnancy complications
    "गर्भावस्था में समस्या", "बच्चा हिल नहीं रहा", "पेट में बच्चा",
    # Delivery complications
    "प्रसव", "बच्चा पैदा", "डिलीवरी", "जन्म",
    # Severe menstrual issues
    "माहवारी में समस्या", "पीरियड्स में दिक्कत", "मासिक धर्म",
    # Critical symptoms
    "बेहोशी", "सांस लेने में दिक्कत", "चक्कर आना", "उल्टी",
    # Calls for help
    "मदद चाहिए", "तुरंत", "जल्दी", "गंभीर",
    # English
    "heavy bleeding", "unconscious", "can't breathe", "cannot breathe",
    "labour pain", "labor pain", "baby not moving", "fainted",
)

END_KEYWORDS: tuple[str, ...] = (
    # Hindi
    "अलविदा", "अल्विदा", "alvida",
    "धन्यवाद", "समाप्त", "बंद", "खत्म", "रुको", "बाय",
    # English
    "bye", "goodbye", "thanks", "thank you", "end", "stop", "quit", "exit",
)


def find_keyword(text: Optional[str], keywords: Iterable[str]) -> Optional[str]:
    """First keyword contained in text (case-insensitive), or None."""
    if not text:
        return None
    lowered = text.lower()
    for keyword in keywords:
        if keyword.lower() in lowered:
            return keyword
    return None


def detect_emergency_keywords(transcription: Optional[str]) -> Optional[str]:
    """
    Scan a transcription for emergency language.

    Returns:
        Human-readable reason when a keyword matched, else None
    """
    keyword = find_keyword(transcription, EMERGENCY_KEYWORDS)
    if keyword is None:
        return None
    return f'Emergency keyword detected: "{keyword}" - requires immediate medical attention'


# Latin or Devanagari word characters on either side mean the keyword is part of a longer word
_WORD_CHARS = r"\w\u0900-\u097F"


def _whole_word_pattern(keyword: str) -> re.Pattern:
    return re.compile(
        rf"(?<![{_WORD_CHARS}]){re.escape(keyword)}(?![{_WORD_CHARS}])",
        re.IGNORECASE,
    )


_END_PATTERNS: tuple[re.Pattern, ...] = tuple(_whole_word_pattern(k) for k in END_KEYWORDS)


def wants_to_end_call(transcription: Optional[str]) -> bool:
    """True when the caller used a goodbye word as a whole word ("stop", not "nonstop")."""
    if not transcription:
        return False
    return any(pattern.search(transcription) for pattern in _END_PATTERNS)
