"""Ledger gateway client for protective withdrawals.

The gateway builds, signs and submits the withdrawal transaction; this
client only asks for it and, unless disabled, waits for finality so that
share counts are never reduced for a transaction that later reverts.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from .config import settings
from .errors import SubmissionFailed
from .interfaces import LedgerSubmitter

logger = logging.getLogger(__name__)

_FINAL_FAILURE_STATES = {"failed", "reverted", "rejected", "expired"}


class LedgerClient(LedgerSubmitter):
    """Submits withdrawals over HTTP and polls until confirmed."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        await_confirmation: Optional[bool] = None,
        confirmation_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or settings.ledger_api_url).rstrip("/")
        api_key = api_key if api_key is not None else settings.ledger_api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=settings.ledger_timeout_seconds,
        )
        self.await_confirmation = (
            await_confirmation if await_confirmation is not None else settings.ledger_await_confirmation
        )
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.ledger_confirmation_timeout_seconds
        )
        self.poll_interval = poll_interval if poll_interval is not None else settings.ledger_poll_interval_seconds
        self._sleep = sleep

    def close(self):
        self.client.close()

    def submit_withdrawal(self, position_id: str, share_amount: int) -> str:
        """Submit a withdrawal and return its transaction reference.

        Raises:
            SubmissionFailed: the gateway rejected the request, was
                unreachable, or the transaction did not confirm in time.
        """
        logger.info(f"Submitting withdrawal of {share_amount} shares for {position_id}")
        try:
            response = self.client.post(
                "/withdrawals",
                json={"position_id": position_id, "share_amount": share_amount},
            )
        except httpx.HTTPError as e:
            raise SubmissionFailed(f"Ledger gateway unreachable: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise SubmissionFailed(
                f"Ledger gateway rejected withdrawal for {position_id}: "
                f"{response.status_code} - {response.text}"
            )

        try:
            tx_reference = response.json()["tx_reference"]
        except (ValueError, KeyError, TypeError) as e:
            raise SubmissionFailed(f"Ledger gateway returned no tx_reference: {e}") from e

        logger.info(f"Withdrawal submitted for {position_id}: {tx_reference}")

        if self.await_confirmation:
            self.wait_for_confirmation(tx_reference)
        return tx_reference

    def wait_for_confirmation(self, tx_reference: str) -> None:
        """Poll the gateway until ``tx_reference`` is confirmed."""
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            status = self.get_status(tx_reference)
            if status == "confirmed":
                logger.info(f"Transaction {tx_reference} confirmed")
                return
            if status in _FINAL_FAILURE_STATES:
                raise SubmissionFailed(f"Transaction {tx_reference} {status}", tx_reference=tx_reference)
            if time.monotonic() >= deadline:
                raise SubmissionFailed(
                    f"Transaction {tx_reference} not confirmed within {self.confirmation_timeout}s "
                    f"(last status: {status})",
                    tx_reference=tx_reference,
                )
            self._sleep(self.poll_interval)

    def get_status(self, tx_reference: str) -> str:
        """Current gateway status for ``tx_reference``; ``"unknown"`` if unreachable."""
        try:
            response = self.client.get(f"/transactions/{tx_reference}")
            if response.status_code != 200:
                logger.warning(f"Status lookup for {tx_reference} returned {response.status_code}")
                return "unknown"
            return str(response.json().get("status", "unknown")).lower()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Status lookup for {tx_reference} failed: {e}")
            return "unknown"
