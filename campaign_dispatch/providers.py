"""Provider collaborators: email API, SMS gateway and carrier lookup."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Iterable, Optional

import aiohttp

from .errors import ConfigurationError, TransientProviderError, error_for_status
from .logger import get_logger

JsonDict = Dict[str, Any]
DEFAULT_TIMEOUT = 30.0

logger = get_logger("Providers")


def _extract_detail(text: str) -> str:
    """Pull a human readable reason out of a provider error body."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text[:500]
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("detail") or errors[0].get("title") or errors[0])
        for key in ("detail", "message", "error"):
            if data.get(key):
                return str(data[key])
    return text[:500]


async def _post_json(url: str, payload: JsonDict, api_key: Optional[str], timeout: float) -> JsonDict:
    """POST ``payload`` and return the decoded body, mapping failures onto the taxonomy."""
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.post(url, json=payload, headers=headers) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise error_for_status(resp.status, _extract_detail(text))
                return await resp.json()
    except asyncio.TimeoutError as exc:
        raise TransientProviderError(f"Request to {url} timed out") from exc
    except aiohttp.ClientConnectionError as exc:
        raise TransientProviderError(f"Connection to {url} failed: {exc}") from exc


class EmailProvider:
    """Interface implemented by email sending providers."""

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        tags: Optional[Dict[str, Optional[str]]] = None,
        unsubscribe_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> JsonDict:
        """Send one message and return ``{"provider_message_id": ...}``."""
        raise NotImplementedError


class HttpEmailProvider(EmailProvider):
    """JSON-over-HTTP email provider."""

    def __init__(self, api_url: Optional[str], api_key: Optional[str], from_address: Optional[str], timeout: float = DEFAULT_TIMEOUT):
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout

    async def send(self, to, subject, html, tags=None, unsubscribe_url=None, idempotency_key=None) -> JsonDict:
        if not self.api_url or not self.api_key or not self.from_address:
            raise ConfigurationError("Email provider is not configured")
        headers: Dict[str, str] = {}
        if unsubscribe_url:
            headers["List-Unsubscribe"] = f"<{unsubscribe_url}>, <mailto:{self.from_address}?subject=Unsubscribe>"
            headers["List-Unsubscribe-Post"] = "List-Unsubscribe=One-Click"
        payload: JsonDict = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
            "tags": {k: str(v) for k, v in (tags or {}).items() if v},
            "headers": headers,
        }
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        data = await _post_json(self.api_url, payload, self.api_key, self.timeout)
        message_id = data.get("id") or data.get("message_id") or (data.get("data") or {}).get("id")
        return {"provider_message_id": message_id}


class SmsGateway:
    """Interface implemented by SMS/MMS gateways."""

    @property
    def configured(self) -> bool:
        return True

    async def send(
        self,
        to: str,
        body: str,
        from_number: Optional[str] = None,
        media_urls: Optional[Iterable[str]] = None,
    ) -> JsonDict:
        """Submit a message and return ``{"provider_message_id", "resolved_from"}``."""
        raise NotImplementedError


class HttpSmsGateway(SmsGateway):
    """Messaging-profile based SMS gateway (``POST {api_url}/messages``)."""

    def __init__(self, api_url: Optional[str], api_key: Optional[str], profile_id: Optional[str], timeout: float = DEFAULT_TIMEOUT):
        self.api_url = api_url
        self.api_key = api_key
        self.profile_id = profile_id
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key and self.profile_id)

    async def send(self, to, body, from_number=None, media_urls=None) -> JsonDict:
        payload: JsonDict = {"to": to, "text": body, "messaging_profile_id": self.profile_id}
        media = list(media_urls or [])
        if media:
            payload["media_urls"] = media
        if from_number:
            payload["from"] = from_number
        url = f"{self.api_url.rstrip('/')}/messages"
        data = (await _post_json(url, payload, self.api_key, self.timeout)).get("data") or {}
        sender = data.get("from")
        if isinstance(sender, dict):
            sender = sender.get("phone_number")
        return {"provider_message_id": data.get("id"), "resolved_from": sender or ""}


class CarrierLookup:
    """Resolve the carrier name serving a phone number."""

    async def lookup(self, phone_number: str) -> Optional[str]:
        raise NotImplementedError


class HttpCarrierLookup(CarrierLookup):
    """Number lookup over HTTP with a per-number memo; failures resolve to ``None``."""

    def __init__(self, api_url: Optional[str], api_key: Optional[str], timeout: float = 10.0):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self._cache: Dict[str, Optional[str]] = {}

    async def lookup(self, phone_number: str) -> Optional[str]:
        if phone_number in self._cache:
            return self._cache[phone_number]
        if not self.api_url or not self.api_key:
            self._cache[phone_number] = None
            return None
        url = f"{self.api_url.rstrip('/')}/number_lookup"
        try:
            data = await _post_json(url, {"phone_number": phone_number}, self.api_key, self.timeout)
        except Exception as exc:
            logger.warning("Carrier lookup failed for %s: %s", phone_number, exc)
            self._cache[phone_number] = None
            return None
        carrier = ((data.get("data") or {}).get("carrier") or {}).get("name")
        self._cache[phone_number] = carrier
        return carrier
