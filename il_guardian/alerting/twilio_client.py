"""Twilio client for SMS escalation when IL protection keeps failing."""

import logging
from typing import Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from ..config import settings

logger = logging.getLogger(__name__)

# Concatenated SMS tops out at 1600 characters.
_SMS_LIMIT = 1500


def _fit_sms(message: str) -> str:
    if len(message) <= _SMS_LIMIT:
        return message
    return message[:_SMS_LIMIT - 3] + "..."


class TwilioClient:
    """Sends escalation SMS to the on-call number.

    Only used for CRITICAL guardian alerts and for positions whose
    protective withdrawal has failed repeatedly.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
    ):
        self.client = client
        self.from_number = from_number or settings.twilio_phone_number
        self.to_number = to_number or settings.alert_phone_number
        self.enabled = client is not None or settings.twilio_enabled

    def connect(self):
        """Create the REST client and verify the account credentials."""
        if not self.enabled:
            logger.warning("Twilio not configured - IL escalation will fall back to Telegram")
            return

        try:
            self.client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
            account = self.client.api.accounts(settings.twilio_account_sid).fetch()
            logger.info(f"Twilio ready for IL escalation (account: {account.friendly_name})")
        except TwilioRestException as e:
            logger.error(f"Twilio credential check failed, SMS escalation disabled: {e}")
            self.enabled = False
            raise

    def send_sms(self, message: str) -> Optional[str]:
        """Send an escalation SMS.

        Returns:
            Twilio message SID, or None so the caller can fall back
        """
        if not self.enabled or not self.client:
            logger.warning("SMS escalation requested but Twilio is not enabled")
            return None

        try:
            msg = self.client.messages.create(
                body=_fit_sms(message),
                from_=self.from_number,
                to=self.to_number,
            )
        except TwilioRestException as e:
            logger.error(f"Escalation SMS to {self.to_number} failed: {e}")
            return None

        logger.info(f"Escalation SMS sent to {self.to_number}: {msg.sid}")
        return msg.sid
