"""Exception taxonomy for IL Guardian.

Every error is scoped to a single pool or a single position. The
monitoring loop catches them per item so one failure never stops the
rest of a tick.
"""


class GuardianError(Exception):
    """Base exception for IL Guardian."""
    pass


class AlreadyTracked(GuardianError):
    """Raised when registering a pool that is already tracked."""
    pass


class PoolNotTracked(GuardianError):
    """Raised when refreshing a pool that is not registered."""
    pass


class PoolNotFound(GuardianError):
    """Raised when no snapshot exists for a pool."""
    pass


class PositionNotFound(GuardianError):
    """Raised when the persistence layer has no record for a position."""
    pass


class DataSourceUnavailable(GuardianError):
    """Raised when reserve data could not be fetched. Retried next tick."""
    pass


class InvalidRatio(GuardianError):
    """Raised for degenerate reserve ratios or an out-of-range IL result."""
    pass


class SubmissionFailed(GuardianError):
    """Raised when the ledger rejected or never confirmed a withdrawal."""

    def __init__(self, message: str, tx_reference: str = None):
        super().__init__(message)
        self.tx_reference = tx_reference


class InsufficientShares(GuardianError):
    """Raised when the computed exit is zero or exceeds remaining shares."""
    pass


class PersistenceError(GuardianError):
    """Raised when a position record could not be read or written."""
    pass
