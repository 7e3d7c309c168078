"""Data models for IL Guardian."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any


class PositionStatus(str, Enum):
    SAFE = "safe"
    VIOLATION = "violation"
    PROTECTING = "protecting"
    PROTECTED = "protected"


class AlertType(str, Enum):
    IL_VIOLATION = "il_violation"
    PROTECTION_EXECUTED = "protection_executed"
    PROTECTION_FAILED = "protection_failed"
    GUARDIAN_DEGRADED = "guardian_degraded"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"


class AlertChannel(str, Enum):
    TELEGRAM = "telegram"
    SMS = "sms"


@dataclass(frozen=True)
class ReserveSnapshot:
    """Raw reserve data as returned by the market data provider."""
    reserve_a: Decimal
    reserve_b: Decimal
    total_shares: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class PoolState:
    """Latest known reserves for a tracked pool."""
    pool_id: str
    reserve_a: Decimal
    reserve_b: Decimal
    total_shares: Decimal
    updated_at: datetime

    def __post_init__(self):
        if self.reserve_a < 0 or self.reserve_b < 0:
            raise ValueError(f"Pool {self.pool_id}: reserves must be non-negative")

    @classmethod
    def from_snapshot(cls, pool_id: str, snapshot: ReserveSnapshot) -> "PoolState":
        return cls(
            pool_id=pool_id,
            reserve_a=snapshot.reserve_a,
            reserve_b=snapshot.reserve_b,
            total_shares=snapshot.total_shares,
            updated_at=snapshot.timestamp,
        )


@dataclass
class Position:
    """A user's stake in a pool under IL protection (a vault)."""
    position_id: str
    owner_address: str
    pool_id: str
    entry_ratio: Decimal
    shares: int
    max_il_bps: int
    current_il_bps: int = 0
    status: PositionStatus = PositionStatus.SAFE
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not 0 <= self.max_il_bps <= 10000:
            raise ValueError(f"max_il_bps must be within 0-10000, got {self.max_il_bps}")
        if self.shares < 0:
            raise ValueError(f"shares must be non-negative, got {self.shares}")

    @property
    def is_violating(self) -> bool:
        return self.current_il_bps > self.max_il_bps

    def copy(self) -> "Position":
        return replace(self)


@dataclass(frozen=True)
class ILResult:
    """Outcome of one IL evaluation. Never persisted."""
    pool_id: str
    position_id: str
    entry_ratio: Decimal
    current_ratio: Decimal
    il: Decimal
    computed_at: datetime

    @property
    def il_pct(self) -> Decimal:
        return self.il * 100


@dataclass(frozen=True)
class ProtectionResult:
    """Outcome of a confirmed protective withdrawal."""
    position_id: str
    exit_fraction: Decimal
    shares_withdrawn: int
    remaining_shares: int
    tx_reference: str


@dataclass
class Alert:
    """Alert to be delivered to the operator."""
    alert_type: AlertType
    severity: Severity
    position_id: Optional[str]
    message: str
    pool_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    suggested_action: Optional[str] = None

    def format_message(self) -> str:
        """Format alert message for delivery."""
        emoji = {
            Severity.INFO: "ℹ️",
            Severity.WARNING: "⚠️",
            Severity.URGENT: "🚨",
            Severity.CRITICAL: "🔴",
        }.get(self.severity, "")

        lines = [f"{emoji} {self.severity.value.upper()}: {self.alert_type.value.replace('_', ' ').title()}"]
        if self.position_id:
            lines.append(f"Position: {self.position_id}")
        if self.pool_id:
            lines.append(f"Pool: {self.pool_id}")
        lines.append(self.message)

        if self.details.get("il_bps") is not None:
            lines.append(f"IL: {self.details['il_bps'] / 100:.2f}%")
        if self.details.get("max_il_bps") is not None:
            lines.append(f"Limit: {self.details['max_il_bps'] / 100:.2f}%")
        if self.details.get("shares_withdrawn"):
            lines.append(f"Withdrawn: {self.details['shares_withdrawn']} shares")
        if self.details.get("tx_reference"):
            lines.append(f"Tx: {self.details['tx_reference']}")
        if self.suggested_action:
            lines.append(f"Action: {self.suggested_action}")

        return "\n".join(lines)


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time view of the control loop."""
    running: bool
    tracked_pool_count: int
    last_tick_timestamp: Optional[datetime]
    monitored_position_count: int = 0
    consecutive_errors: int = 0
    uptime_seconds: float = 0.0

    @property
    def status(self) -> str:
        if not self.running:
            return "stopped"
        return "degraded" if self.consecutive_errors > 0 else "running"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "status": self.status,
            "tracked_pool_count": self.tracked_pool_count,
            "monitored_position_count": self.monitored_position_count,
            "last_tick_timestamp": self.last_tick_timestamp.isoformat() if self.last_tick_timestamp else None,
            "consecutive_errors": self.consecutive_errors,
            "uptime_seconds": round(self.uptime_seconds, 1),
        }
