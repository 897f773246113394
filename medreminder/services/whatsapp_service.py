# medreminder/services/whatsapp_service.py
# Messaging gateway: one send contract over an ordered list of WhatsApp providers.
import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from http import HTTPStatus
from typing import List, Optional, Sequence

import backoff
import httpx
import requests
import structlog
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

log = structlog.get_logger(__name__)

COUNTRY_CODE = "62"


class MessagingConfigurationError(Exception):
    """No usable provider credentials for the requested send path"""
    pass


def normalize_phone_number(raw: str) -> str:
    """Digits only with country code: 0812... / 812... / +62 812... -> 62812..."""
    digits = re.sub(r"\D", "", raw or "")
    if not digits:
        return ""
    if digits.startswith("0"):
        return COUNTRY_CODE + digits[1:]
    if digits.startswith("8") and len(digits) >= 9:
        return COUNTRY_CODE + digits
    if not digits.startswith(COUNTRY_CODE):
        return COUNTRY_CODE + digits
    return digits


def phone_lookup_variants(raw: str) -> List[str]:
    """Forms a stored number may take: as received, 62-prefixed and local 0-prefixed."""
    variants = []
    digits = re.sub(r"\D", "", raw or "")
    normalized = normalize_phone_number(raw)
    for candidate in (raw, digits, normalized, "+" + normalized if normalized else ""):
        if candidate and candidate not in variants:
            variants.append(candidate)
    if normalized.startswith(COUNTRY_CODE):
        local = "0" + normalized[len(COUNTRY_CODE):]
        if local not in variants:
            variants.append(local)
    return variants


@dataclass
class SendResult:
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


class MessagingBackend(ABC):
    name: str = "base"

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    def format_number(self, to: str) -> str:
        return normalize_phone_number(to)

    @abstractmethod
    async def send(self, to: str, body: str) -> SendResult:
        ...


def _is_client_error(exc: Exception) -> bool:
    # 4xx will not get better on retry
    return (
        isinstance(exc, httpx.HTTPStatusError)
        and exc.response.status_code < HTTPStatus.INTERNAL_SERVER_ERROR
    )


class FonnteBackend(MessagingBackend):
    """Primary provider (Fonnte WhatsApp API)."""

    name = "fonnte"

    def __init__(self, token: Optional[str], base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.token)

    @backoff.on_exception(backoff.expo, (httpx.TimeoutException, httpx.TransportError, httpx.HTTPStatusError),
                          max_tries=3, jitter=None, giveup=_is_client_error)
    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"Authorization": self.token, "Content-Type": "application/json"}
        url = f"{self.base_url}/send"
        if self._client is not None:
            resp = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()
        return resp

    async def send(self, to: str, body: str) -> SendResult:
        number = self.format_number(to)
        if not number:
            return SendResult(False, self.name, error="Invalid destination number")
        try:
            resp = await self._post({"target": number, "message": body})
            data = resp.json()
        except httpx.HTTPError as e:
            log.warning("whatsapp.provider_error", provider=self.name, to=number, error=str(e))
            return SendResult(False, self.name, error=f"Fonnte Error: {e}")
        except ValueError:
            return SendResult(False, self.name, error="Fonnte Error: invalid JSON response")

        if not isinstance(data, dict):
            return SendResult(False, self.name, error="Fonnte Error: unexpected response body")

        if not data.get("status"):
            return SendResult(False, self.name, error=data.get("reason") or "Fonnte rejected the message")

        message_id = data.get("id")
        if isinstance(message_id, list):
            message_id = message_id[0] if message_id else None
        return SendResult(True, self.name, message_id=str(message_id) if message_id is not None else None)


class TwilioBackend(MessagingBackend):
    """Backup provider (Twilio WhatsApp)."""

    name = "twilio"

    def __init__(self, account_sid: Optional[str], auth_token: Optional[str],
                 from_number: Optional[str], client: Optional[Client] = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._client or (self.account_sid and self.auth_token and self.from_number))

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def format_number(self, to: str) -> str:
        number = normalize_phone_number(to)
        return f"whatsapp:+{number}" if number else ""

    async def send(self, to: str, body: str) -> SendResult:
        to_number = self.format_number(to)
        if not to_number:
            return SendResult(False, self.name, error="Invalid destination number")
        from_number = self.from_number or ""
        if not from_number.startswith("whatsapp:"):
            from_number = f"whatsapp:{from_number}"
        try:
            sent_message = await asyncio.to_thread(
                self.client.messages.create, from_=from_number, body=body, to=to_number
            )
        except TwilioRestException as e:
            log.warning("whatsapp.provider_error", provider=self.name, status=e.status, error=e.msg)
            return SendResult(False, self.name, error=f"Twilio Error: {e.status} - {e.msg}")
        except (TwilioException, requests.RequestException) as e:
            # Network failures surface as requests errors from the twilio http client
            log.warning("whatsapp.provider_error", provider=self.name, error=str(e))
            return SendResult(False, self.name, error=f"Twilio Error: {e}")
        return SendResult(True, self.name, message_id=sent_message.sid)


class MessagingGateway:
    """Ordered provider list behind a single send().

    With failover enabled a failed send moves on to the next configured
    backend; the returned result names the backend that produced it.
    An explicit provider override sends through that backend only.
    """

    def __init__(self, backends: Sequence[MessagingBackend], failover_enabled: bool = True):
        self.backends = list(backends)
        self.failover_enabled = failover_enabled

    @property
    def configured_backends(self) -> List[MessagingBackend]:
        return [backend for backend in self.backends if backend.is_configured()]

    def ensure_configured(self, provider: Optional[str] = None) -> None:
        self._candidates(provider)

    def _candidates(self, provider: Optional[str]) -> List[MessagingBackend]:
        if provider:
            matching = [b for b in self.backends if b.name == provider and b.is_configured()]
            if not matching:
                raise MessagingConfigurationError(f"Messaging provider '{provider}' is not configured")
            return matching[:1]
        configured = self.configured_backends
        if not configured:
            raise MessagingConfigurationError("No messaging provider is configured")
        return configured if self.failover_enabled else configured[:1]

    async def send(self, to: str, body: str, provider: Optional[str] = None) -> SendResult:
        candidates = self._candidates(provider)
        result = None
        for index, backend in enumerate(candidates):
            result = await backend.send(to, body)
            if result.success:
                log.info("whatsapp.sent", provider=backend.name, to=normalize_phone_number(to),
                         message_id=result.message_id, attempt=index + 1)
                return result
            if index + 1 < len(candidates):
                log.warning("whatsapp.failover", failed_provider=backend.name,
                            next_provider=candidates[index + 1].name, error=result.error)
        log.error("whatsapp.send_failed", provider=result.provider, to=normalize_phone_number(to), error=result.error)
        return result


def build_gateway(settings) -> MessagingGateway:
    available = {
        "fonnte": lambda: FonnteBackend(settings.fonnte_token, settings.fonnte_base_url,
                                        timeout=settings.messaging_timeout_seconds),
        "twilio": lambda: TwilioBackend(settings.twilio_account_sid, settings.twilio_auth_token,
                                        settings.twilio_whatsapp_number),
    }
    backends = [available[name]() for name in settings.provider_order if name in available]
    return MessagingGateway(backends, failover_enabled=settings.messaging_failover_enabled)
