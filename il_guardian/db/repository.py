"""Database repository for IL Guardian position records.

Positions are evaluated on a worker pool, so each call checks out its own
connection from a ``ThreadedConnectionPool``. A rollback in one worker can
never discard another worker's pending write.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from ..config import settings
from ..errors import PersistenceError, PositionNotFound
from ..interfaces import PositionStore
from ..models import Position, PositionStatus

logger = logging.getLogger(__name__)


class Repository(PositionStore):
    """PostgreSQL access for il_positions and protection_actions."""

    def __init__(self, max_connections: Optional[int] = None):
        self.pool: Optional[ThreadedConnectionPool] = None
        # One per position worker plus the loop thread's listing query.
        self.max_connections = max_connections or settings.max_workers + 1

    def connect(self):
        """Open the connection pool."""
        try:
            self.pool = ThreadedConnectionPool(
                1,
                self.max_connections,
                host=settings.db_host,
                port=settings.db_port,
                user=settings.db_user,
                password=settings.db_password,
                dbname=settings.db_name,
            )
            logger.info(f"Connected to database (pool of {self.max_connections})")
        except psycopg2.Error as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    def close(self):
        """Close every pooled connection."""
        if self.pool:
            self.pool.closeall()
            self.pool = None

    def ensure_connected(self):
        """Reopen the pool if it was closed."""
        if self.pool is None or self.pool.closed:
            logger.warning("Database pool unavailable, reconnecting")
            self.connect()

    @contextmanager
    def _transaction(self):
        """Check out a connection for one transaction.

        Commits on success and rolls back on ``psycopg2.Error``. Broken
        connections are dropped from the pool instead of being reused.
        """
        if self.pool is None:
            raise PersistenceError("Database is not connected")
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except psycopg2.Error:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self.pool.putconn(conn, close=bool(conn.closed))

    def load_position(self, position_id: str) -> Position:
        """Load the last durably saved record for a position."""
        query = """
            SELECT
                position_id, owner_address, pool_id, entry_ratio, shares,
                max_il_bps, current_il_bps, status, updated_at
            FROM il_positions
            WHERE position_id = %s
        """
        try:
            with self._transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, (position_id,))
                    row = cur.fetchone()
        except psycopg2.Error as e:
            logger.error(f"Failed to load position {position_id}: {e}")
            raise PersistenceError(f"Failed to load position {position_id}: {e}") from e

        if not row:
            raise PositionNotFound(f"Position {position_id} not found")

        max_il_bps = row["max_il_bps"]
        return Position(
            position_id=row["position_id"],
            owner_address=row["owner_address"],
            pool_id=row["pool_id"],
            entry_ratio=Decimal(str(row["entry_ratio"])),
            shares=int(row["shares"]),
            max_il_bps=int(max_il_bps) if max_il_bps is not None else settings.default_max_il_bps,
            current_il_bps=int(row["current_il_bps"] or 0),
            status=PositionStatus(row["status"]),
            updated_at=row["updated_at"],
        )

    def save_position(self, position: Position) -> None:
        """Write back the mutable fields of a position."""
        query = """
            UPDATE il_positions
            SET
                shares = %s,
                current_il_bps = %s,
                status = %s,
                updated_at = NOW()
            WHERE position_id = %s
        """
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (
                        position.shares,
                        position.current_il_bps,
                        position.status.value,
                        position.position_id,
                    ))
                    updated = cur.rowcount
        except psycopg2.Error as e:
            logger.error(f"Failed to save position {position.position_id}: {e}")
            raise PersistenceError(f"Failed to save position {position.position_id}: {e}") from e

        if updated == 0:
            raise PersistenceError(f"Position {position.position_id} no longer exists")

    def list_position_ids(self, pool_ids: Iterable[str]) -> List[str]:
        """Ids of all positions in any of the given pools."""
        pool_ids = list(pool_ids)
        if not pool_ids:
            return []
        query = """
            SELECT position_id
            FROM il_positions
            WHERE pool_id = ANY(%s)
            ORDER BY position_id
        """
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (pool_ids,))
                    rows = cur.fetchall()
            return [row[0] for row in rows]
        except psycopg2.Error as e:
            logger.error(f"Failed to list positions: {e}")
            raise PersistenceError(f"Failed to list positions: {e}") from e

    def record_protection(
        self,
        position: Position,
        shares_withdrawn: int,
        exit_fraction: Decimal,
        tx_reference: str,
    ) -> None:
        """Append a confirmed protective withdrawal to the audit table."""
        query = """
            INSERT INTO protection_actions (
                position_id, pool_id, shares_withdrawn, exit_fraction,
                il_bps, tx_reference
            ) VALUES (%s, %s, %s, %s, %s, %s)
        """
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (
                        position.position_id,
                        position.pool_id,
                        shares_withdrawn,
                        str(exit_fraction),
                        position.current_il_bps,
                        tx_reference,
                    ))
        except psycopg2.Error as e:
            logger.error(f"Failed to record protection for {position.position_id}: {e}")
            raise PersistenceError(f"Failed to record protection: {e}") from e
