"""
Maitri - TwiML Documents

Call-control markup returned to Twilio by every webhook. Text passed to
<Say> is XML-escaped by the twilio helper library.
"""

from __future__ import annotations

from twilio.twiml.voice_response import VoiceResponse

from maitri.config import Settings


GREETING_TEXT = (
    "Namaste. Aap Maitri se baat kar rahe hain. Main aapki madad karne ke liye yahan hoon. "
    "Kripaya mujhe apni samasya batayen."
)
FOLLOW_UP_PROMPT = 'Kya aapka koi aur sawal hai? Agar nahi toh "alvida" kahiye.'
GOODBYE_TEXT = "Dhanyavaad. Apna khayal rakhein. Alvida."
FINAL_TURN_TEXT = "Aapka swasthya hamari prathmikta hai. Agar aur madad chahiye toh ASHA karyakarta se miliye. Dhanyavaad."
TURN_LIMIT_TEXT = (
    "Aapne bahut saare sawal pooche hain. Agar aur madad chahiye toh ASHA karyakarta se miliye. Dhanyavaad."
)
VILLAGE_REQUEST_TEXT = (
    "Main aapki sthiti ke baare mein chintit hoon. "
    "Aapki behtar madad ke liye, kripaya apne gaon ka naam batayen."
)
EMERGENCY_CONFIRMATION_TEXT = (
    "Dhanyavaad. Main aapki jaankari aapke ASHA karyakarta ko bhej rahi hoon. "
    "Ve jaldi hi aapse sampark karenge. Kripaya shant rahein."
)
FALLBACK_TEXT = (
    "Maaf kijiye, main aapko sunne mein samasya ka samna kar rahi hoon. "
    "Kripaya apne ASHA karyakarta se turant sampark karein."
)

PROCESS_AUDIO_PATH = "/ivr/process-audio"
CONTINUE_PATH = "/ivr/continue-conversation"
BREAK_GLASS_PATH = "/ivr/break-glass-confirm"


class TwimlBuilder:
    """Builds each call-control document with the configured voice."""

    def __init__(self, voice: str = "Polly.Aditi", language: str = "hi-IN"):
        self._voice = voice
        self._language = language

    @classmethod
    def from_settings(cls, settings: Settings) -> "TwimlBuilder":
        return cls(voice=settings.tts_voice, language=settings.tts_language)

    def _say(self, response: VoiceResponse, text: str) -> None:
        response.say(text, voice=self._voice, language=self._language)

    @staticmethod
    def _record(response: VoiceResponse, action: str, max_length: int) -> None:
        response.record(
            action=action,
            method="POST",
            max_length=max_length,
            timeout=5,
            transcribe=False,
            play_beep=True,
        )

    def greeting(self) -> str:
        response = VoiceResponse()
        self._say(response, GREETING_TEXT)
        self._record(response, PROCESS_AUDIO_PATH, max_length=60)
        return str(response)

    def advice(self, advice_text: str) -> str:
        """Speak the response, then listen for a follow-up."""
        response = VoiceResponse()
        self._say(response, advice_text)
        self._say(response, FOLLOW_UP_PROMPT)
        self._record(response, CONTINUE_PATH, max_length=30)
        return str(response)

    def final_advice(self, advice_text: str) -> str:
        """Speak the response on the last allowed turn, then hang up."""
        response = VoiceResponse()
        self._say(response, advice_text)
        self._say(response, FINAL_TURN_TEXT)
        response.hangup()
        return str(response)

    def goodbye(self) -> str:
        return self._say_and_hang_up(GOODBYE_TEXT)

    def turn_limit_reached(self) -> str:
        return self._say_and_hang_up(TURN_LIMIT_TEXT)

    def village_request(self) -> str:
        response = VoiceResponse()
        self._say(response, VILLAGE_REQUEST_TEXT)
        self._record(response, BREAK_GLASS_PATH, max_length=10)
        return str(response)

    def emergency_confirmation(self) -> str:
        return self._say_and_hang_up(EMERGENCY_CONFIRMATION_TEXT)

    def fallback(self) -> str:
        """Apology-and-hangup document returned whenever a webhook fails."""
        return self._say_and_hang_up(FALLBACK_TEXT)

    def _say_and_hang_up(self, text: str) -> str:
        response = VoiceResponse()
        self._say(response, text)
        response.hangup()
        return str(response)
