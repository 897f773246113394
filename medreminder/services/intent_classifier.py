# medreminder/services/intent_classifier.py
# Client for the external intent classification service, plus a keyword
# classifier used when no service URL is configured.
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog

from ..models import ConfirmationStatus

log = structlog.get_logger(__name__)

UNCLEAR = "unclear"

CONFIRMED_INTENTS = {"confirmed", "confirm", "taken", "yes", "affirmative", "medication_taken"}
MISSED_INTENTS = {"missed", "not_taken", "no", "negative", "medication_missed"}

CONFIRMED_KEYWORDS = ["sudah minum", "sudah", "udah", "selesai", "sudah diminum", "done"]
MISSED_KEYWORDS = ["belum", "lupa", "tidak minum", "gak minum", "nggak minum", "not yet"]
EMERGENCY_KEYWORDS = [
    "darurat", "emergency", "urgent", "tolong", "sesak nafas", "sesak napas",
    "muntah darah", "pingsan", "demam tinggi", "nyeri dada", "kejang",
    "tidak sadar", "pendarahan",
]


@dataclass
class IntentResult:
    intent: str
    confidence: float
    urgency: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unclear(cls, reason: Optional[str] = None) -> "IntentResult":
        return cls(intent=UNCLEAR, confidence=0.0, raw={"reason": reason} if reason else {})


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text) is not None


def detect_emergency(text: str) -> bool:
    lowered = (text or "").lower()
    return any(_contains_phrase(lowered, keyword) for keyword in EMERGENCY_KEYWORDS)


def intent_to_status(intent: str) -> ConfirmationStatus:
    normalized = (intent or "").strip().lower()
    if normalized in CONFIRMED_INTENTS:
        return ConfirmationStatus.CONFIRMED
    if normalized in MISSED_INTENTS:
        return ConfirmationStatus.MISSED
    return ConfirmationStatus.UNCLEAR


class HttpIntentClassifier:
    """POSTs {message, context} and expects {intent, confidence, urgency?}.

    Never raises: transport errors, bad status codes and malformed payloads
    all come back as an "unclear" result.
    """

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 8.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self._client = client

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self._client is not None:
            return await self._client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload, headers=headers)

    async def classify(self, message: str, context: Optional[dict] = None) -> IntentResult:
        try:
            resp = await self._post({"message": message, "context": context or {}})
            resp.raise_for_status()
            data = resp.json()
            intent = str(data["intent"]).strip().lower()
            confidence = float(data.get("confidence", 0.0))
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            log.warning("intent.classifier_error", error=str(exc))
            return IntentResult.unclear(str(exc))

        # Some deployments report confidence as a percentage
        if confidence > 1:
            confidence = confidence / 100
        confidence = max(0.0, min(confidence, 1.0))
        urgency = bool(data.get("urgency") in (True, "high", "critical", "emergency"))
        return IntentResult(intent=intent, confidence=confidence, urgency=urgency, raw=data)


class KeywordIntentClassifier:
    """Indonesian keyword matching for confirmation replies"""

    async def classify(self, message: str, context: Optional[dict] = None) -> IntentResult:
        text = (message or "").lower().strip()
        urgency = detect_emergency(text)
        if not text:
            return IntentResult.unclear("empty message")
        # "belum" wins over "sudah" in replies such as "belum, tadi sudah makan"
        if any(_contains_phrase(text, k) for k in MISSED_KEYWORDS):
            return IntentResult("missed", 0.9, urgency)
        if any(_contains_phrase(text, k) for k in CONFIRMED_KEYWORDS):
            return IntentResult("confirmed", 0.9, urgency)
        if urgency:
            return IntentResult("emergency", 0.8, True)
        return IntentResult(UNCLEAR, 0.0)


def build_classifier(settings):
    if settings.classifier_enabled:
        return HttpIntentClassifier(
            settings.intent_classifier_url,
            token=settings.intent_classifier_token,
            timeout=settings.intent_classifier_timeout_seconds,
        )
    return KeywordIntentClassifier()
