"""
common.sms_gateway
==================

Outbound SMS through Twilio. The Twilio SDK is blocking, so every call is
pushed through the shared executor.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, List

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from common.errors import SmsDeliveryError
from common.executor_pool import run_in_shared_executor
from common.models import SmsReceipt
from config.credentials import get_settings

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Failed to send SMS."


class SmsGateway:
    def __init__(self, client: Any = None, from_number: str | None = None):
        settings = get_settings()
        self._client = client or Client(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN.get_secret_value(),
        )
        self._from = from_number or settings.TWILIO_PHONE_NUMBER

    def _create(self, to: str, body: str) -> SmsReceipt:
        try:
            message = self._client.messages.create(body=body, to=to, from_=self._from)
        except TwilioRestException as exc:
            logger.error("Twilio rejected SMS to %s: %s", to, exc.msg)
            raise SmsDeliveryError(exc.msg or GENERIC_FAILURE) from exc
        except TwilioException as exc:
            logger.error("Error sending SMS to %s: %s", to, exc)
            raise SmsDeliveryError(str(exc) or GENERIC_FAILURE) from exc
        logger.info("✓ SMS %s queued for %s", message.sid, to)
        return SmsReceipt(sid=message.sid)

    async def send(self, to: str, body: str) -> SmsReceipt:
        return await run_in_shared_executor(self._create, to, body)

    async def send_bulk(self, recipients: List[str], body: str) -> List[SmsReceipt]:
        """All-or-nothing from the caller's view: the first failure is raised."""
        return list(await asyncio.gather(*(self.send(to, body) for to in recipients)))
