"""Message vendor gateways.

The delivery worker treats every gateway as an opaque, possibly slow and
possibly failing call. Gateways report failures through ``SendResult`` and do
not retry; the caller enforces timeouts.
"""

from __future__ import annotations

import random
import re
import string
from dataclasses import dataclass
from typing import Protocol

import anyio
import requests
from loguru import logger

from campaign_broker.core.concurrency import run_in_thread_limited
from campaign_broker.core.config import Settings, settings as default_settings

VENDOR_ERRORS = (
    "Invalid recipient address",
    "Recipient mailbox full",
    "Temporary service unavailability",
    "Rate limit exceeded",
    "Network connectivity issue",
    "Invalid sender address",
    "Message too large",
    "Recipient opted out",
)


@dataclass(frozen=True, slots=True)
class SendResult:
    success: bool
    error: str | None = None
    vendor_message_id: str | None = None


class VendorGateway(Protocol):
    # Customer attribute used as the delivery address ("email" or "phone").
    recipient_field: str

    async def send(self, message_id: str, recipient: str, body: str) -> SendResult: ...


class SimulatedVendorGateway:
    """Simulates an unreliable downstream with injected latency and failures."""

    recipient_field = "email"

    def __init__(
        self,
        *,
        success_rate: float = 0.9,
        latency_ms: tuple[int, int] = (50, 200),
        rng: random.Random | None = None,
    ):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self.latency_ms = latency_ms
        self._rng = rng or random.Random()

    def _vendor_message_id(self) -> str:
        alphabet = string.ascii_lowercase + string.digits
        return "msg_" + "".join(self._rng.choice(alphabet) for _ in range(13))

    async def send(self, message_id: str, recipient: str, body: str) -> SendResult:
        low, high = self.latency_ms
        if high > 0:
            await anyio.sleep(self._rng.uniform(low, high) / 1000)

        if self._rng.random() < self.success_rate:
            logger.bind(message_id=message_id, recipient=recipient).debug("vendor_send_succeeded")
            return SendResult(success=True, vendor_message_id=self._vendor_message_id())

        error = self._rng.choice(VENDOR_ERRORS)
        logger.bind(message_id=message_id, recipient=recipient, error=error).debug(
            "vendor_send_failed"
        )
        return SendResult(success=False, error=error)


def _format_phone_number(raw: str) -> str:
    """Normalize a phone number to digits with the 91 country prefix."""

    digits = re.sub(r"\D", "", re.sub(r"^\+?91", "", raw.strip()))
    if digits and not digits.startswith("91"):
        return f"91{digits}"
    return digits


class HttpVendorGateway:
    """Sends text messages through a WhatsApp-style HTTP API.

    ``requests`` is blocking, so calls run in worker threads bounded by a
    capacity limiter.
    """

    recipient_field = "phone"

    def __init__(
        self,
        *,
        api_base: str,
        token: str,
        channel_number: str | None = None,
        max_threads: int = 4,
        timeout: float = 30.0,
    ):
        self.url = api_base.rstrip("/") + "/messages"
        self.token = token
        self.channel_number = channel_number
        self.timeout = timeout
        self._limiter = anyio.CapacityLimiter(max_threads)

    def _post(self, message_id: str, recipient: str, body: str) -> SendResult:
        to = _format_phone_number(recipient)
        if not to:
            return SendResult(success=False, error="Invalid recipient phone number")
        headers = {"Authorization": f"Bearer {self.token}"}
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": body},
            "client_reference": message_id,
        }
        if self.channel_number:
            payload["from"] = self.channel_number
        try:
            resp = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json() if resp.content else {}
        except requests.HTTPError as exc:
            detail = exc.response.text if exc.response is not None else str(exc)
            return SendResult(success=False, error=f"Vendor HTTP error: {detail[:500]}")
        except (requests.RequestException, ValueError) as exc:
            return SendResult(success=False, error=f"Vendor request failed: {exc}")

        if isinstance(data, dict) and (data.get("success") is False or data.get("error")):
            error = data.get("error") or data.get("message") or "Unknown vendor error"
            return SendResult(success=False, error=str(error))

        vendor_id = None
        if isinstance(data, dict):
            messages = data.get("messages")
            if isinstance(messages, list) and messages and isinstance(messages[0], dict):
                vendor_id = messages[0].get("id")
            vendor_id = vendor_id or data.get("id") or data.get("message_id")
        return SendResult(success=True, vendor_message_id=vendor_id)

    async def send(self, message_id: str, recipient: str, body: str) -> SendResult:
        return await run_in_thread_limited(self._limiter, self._post, message_id, recipient, body)


def build_vendor_gateway(settings: Settings | None = None) -> VendorGateway:
    settings = settings or default_settings
    if settings.VENDOR_MODE == "http":
        if not settings.WBOX_API_BASE or not settings.WBOX_TOKEN:
            raise RuntimeError("WBOX_API_BASE and WBOX_TOKEN must be configured for VENDOR_MODE=http")
        return HttpVendorGateway(
            api_base=settings.WBOX_API_BASE,
            token=settings.WBOX_TOKEN,
            channel_number=settings.WBOX_CHANNEL_NUMBER,
            max_threads=settings.VENDOR_HTTP_MAX_THREADS,
            timeout=settings.VENDOR_SEND_TIMEOUT_SEC,
        )
    if settings.VENDOR_MODE != "simulated":
        raise RuntimeError(f"Unknown VENDOR_MODE: {settings.VENDOR_MODE}")
    return SimulatedVendorGateway(
        success_rate=settings.CAMPAIGN_DELIVERY_SUCCESS_RATE,
        latency_ms=(settings.VENDOR_LATENCY_MIN_MS, settings.VENDOR_LATENCY_MAX_MS),
    )
