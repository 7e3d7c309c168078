"""Telegram client for routine guardian alerts."""

import html
import logging
import time
from typing import Callable, Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


class TelegramClient:
    """Client for sending Telegram messages about violations and exits."""

    _MAX_RETRIES = 3
    _RETRY_BACKOFF_SECONDS = [1, 2, 4]

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.bot_token = bot_token or settings.telegram_bot_token
        self.chat_id = chat_id or settings.telegram_chat_id
        self.enabled = bool(self.bot_token and self.chat_id)
        self.base_url = f"https://api.telegram.org/bot{self.bot_token}"
        self._client = client
        self._sleep = sleep

    def send_message(self, message: str, parse_mode: str = "HTML") -> bool:
        """Send a message with exponential backoff retry.

        Returns:
            True if Telegram accepted the message
        """
        if not self.enabled:
            logger.warning("Telegram not configured")
            return False

        last_error = None
        for attempt in range(self._MAX_RETRIES):
            try:
                response = self._post(
                    f"{self.base_url}/sendMessage",
                    {"chat_id": self.chat_id, "text": message, "parse_mode": parse_mode},
                )
                if response.status_code == 200:
                    logger.debug("Telegram message sent")
                    return True
                last_error = f"Telegram API error: {response.status_code} - {response.text}"
                logger.error(last_error)
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.error(f"Failed to send Telegram message (attempt {attempt + 1}/{self._MAX_RETRIES}): {e}")

            if attempt < self._MAX_RETRIES - 1:
                delay = self._RETRY_BACKOFF_SECONDS[attempt]
                logger.info(f"Retrying Telegram send in {delay}s...")
                self._sleep(delay)

        logger.error(f"All {self._MAX_RETRIES} Telegram send attempts failed. Last error: {last_error}")
        return False

    def send_alert(self, alert_text: str) -> bool:
        """Send an alert via Telegram.

        Alert text embeds upstream error bodies, so it is escaped before
        Telegram parses it as HTML.
        """
        return self.send_message(html.escape(alert_text, quote=False), parse_mode="HTML")

    def _post(self, url: str, payload: dict) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, json=payload, timeout=10.0)
        with httpx.Client() as client:
            return client.post(url, json=payload, timeout=10.0)
