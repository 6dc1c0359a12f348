"""Outbound WhatsApp delivery through the Telnyx messaging API."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import telnyx

from app.types.contracts import SendResult

_LOGGER = logging.getLogger(__name__)


class WhatsAppGateway:
    """``await gateway.send(phone, body) -> SendResult``; never raises.

    Without credentials it runs in DEV mode: the message is logged and
    reported as sent with no gateway id.
    """

    def __init__(self, api_key: Optional[str], from_number: Optional[str], timeout: float = 20.0):
        self.from_number = from_number
        self.timeout = timeout
        self.dev_mode = not (api_key and from_number)
        if api_key:
            telnyx.api_key = api_key

    async def send(self, phone_number: str, body: str) -> SendResult:
        to = phone_number if phone_number.startswith("+") else f"+{phone_number}"
        if self.dev_mode:
            _LOGGER.info("[WhatsApp] DEV mode: would send to %s: %s", to, body)
            return SendResult(success=True)
        try:
            resp = await asyncio.wait_for(
                asyncio.to_thread(telnyx.Message.create, from_=self.from_number, to=to, text=body),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            _LOGGER.warning("[WhatsApp] send to %s timed out after %.0fs", to, self.timeout)
            return SendResult(success=False, error="timeout")
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("[WhatsApp] send to %s failed: %s", to, exc)
            return SendResult(success=False, error=str(exc))
        message_id = getattr(resp, "id", None)
        return SendResult(success=True, message_id=str(message_id) if message_id else None)
