"""Alert dispatcher with SMS escalation for repeated protection failures."""

import logging
from typing import Optional

from ..config import settings
from ..models import (
    Alert,
    AlertChannel,
    AlertType,
    ILResult,
    Position,
    ProtectionResult,
    Severity,
)
from .telegram_client import TelegramClient
from .twilio_client import TwilioClient

logger = logging.getLogger(__name__)


class AlertDispatcher:
    """Routes alerts to Telegram, escalating to SMS when it matters.

    Escalation:
        Telegram - violations, confirmed exits, isolated failures
        SMS      - CRITICAL alerts, and protection that has failed
                   ``sms_escalation_failures`` times in a row
    """

    def __init__(
        self,
        telegram_client: TelegramClient,
        twilio_client: Optional[TwilioClient] = None,
        sms_escalation_failures: Optional[int] = None,
    ):
        self.telegram = telegram_client
        self.twilio = twilio_client
        self.sms_escalation_failures = sms_escalation_failures or settings.sms_escalation_failures

    def dispatch(self, alert: Alert, escalate: bool = False) -> bool:
        """Deliver ``alert``; returns True if any channel accepted it."""
        channel = self._get_channel(alert.severity, escalate)
        message = alert.format_message()

        if channel == AlertChannel.SMS:
            success = self.twilio.send_sms(message) is not None
            if not success:
                # SMS unavailable: Telegram is better than nothing.
                channel = AlertChannel.TELEGRAM
                success = self.telegram.send_alert(message)
        else:
            success = self.telegram.send_alert(message)

        log_level = logging.INFO if success else logging.ERROR
        logger.log(
            log_level,
            f"Alert {'sent' if success else 'FAILED'}: {alert.alert_type.value} "
            f"for {alert.position_id or 'guardian'} via {channel.value}"
        )
        return success

    def _get_channel(self, severity: Severity, escalate: bool) -> AlertChannel:
        if self.twilio is not None and self.twilio.enabled:
            if escalate or severity == Severity.CRITICAL:
                return AlertChannel.SMS
        return AlertChannel.TELEGRAM

    def send_violation_alert(self, position: Position, result: ILResult) -> bool:
        """Position has just crossed its IL limit."""
        alert = Alert(
            alert_type=AlertType.IL_VIOLATION,
            severity=Severity.WARNING,
            position_id=position.position_id,
            pool_id=position.pool_id,
            message=(
                f"Impermanent loss {result.il_pct:.2f}% exceeds the configured limit. "
                f"Entry ratio {position.entry_ratio}, current ratio {result.current_ratio:.6f}."
            ),
            details={"il_bps": position.current_il_bps, "max_il_bps": position.max_il_bps},
            suggested_action="Bounded protective withdrawal in progress",
        )
        return self.dispatch(alert)

    def send_protection_alert(self, position: Position, protection: ProtectionResult) -> bool:
        """A protective withdrawal was confirmed."""
        alert = Alert(
            alert_type=AlertType.PROTECTION_EXECUTED,
            severity=Severity.INFO,
            position_id=position.position_id,
            pool_id=position.pool_id,
            message=(
                f"Exited {protection.exit_fraction * 100}% of the position. "
                f"{protection.remaining_shares} shares remain."
            ),
            details={
                "il_bps": position.current_il_bps,
                "max_il_bps": position.max_il_bps,
                "shares_withdrawn": protection.shares_withdrawn,
                "tx_reference": protection.tx_reference,
            },
        )
        return self.dispatch(alert)

    def send_protection_failed_alert(
        self,
        position: Position,
        error: Exception,
        consecutive_failures: int,
    ) -> bool:
        """A withdrawal was rejected; escalates once failures pile up."""
        escalate = consecutive_failures >= self.sms_escalation_failures
        alert = Alert(
            alert_type=AlertType.PROTECTION_FAILED,
            severity=Severity.URGENT,
            position_id=position.position_id,
            pool_id=position.pool_id,
            message=(
                f"Protective withdrawal failed ({consecutive_failures} in a row): {error}. "
                f"Will retry next tick."
            ),
            details={"il_bps": position.current_il_bps, "max_il_bps": position.max_il_bps},
            suggested_action="Check the ledger gateway" if escalate else None,
        )
        return self.dispatch(alert, escalate=escalate)

    def send_degraded_alert(self, message: str, position_id: Optional[str] = None) -> bool:
        """The guardian itself is impaired."""
        alert = Alert(
            alert_type=AlertType.GUARDIAN_DEGRADED,
            severity=Severity.CRITICAL,
            position_id=position_id,
            message=message,
            suggested_action="Check IL Guardian logs immediately",
        )
        return self.dispatch(alert)
