"""Redis-backed market data provider for pool reserves.

A separate sync job publishes one JSON document per pool into a Redis
hash (``REDIS_RESERVES_KEY``):

    {"reserve_a": "1250000.5", "reserve_b": "310000", "total_shares": "98000",
     "updated_at": "2024-05-01T12:00:00+00:00"}
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import redis

from .config import settings
from .errors import DataSourceUnavailable
from .interfaces import MarketDataProvider
from .models import ReserveSnapshot

logger = logging.getLogger(__name__)


class RedisMarketData(MarketDataProvider):
    """Reads pool reserve snapshots from Redis."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        reserves_key: Optional[str] = None,
        staleness_minutes: Optional[int] = None,
    ):
        self.client = client
        self.reserves_key = reserves_key or settings.redis_reserves_key
        self.staleness_minutes = (
            staleness_minutes if staleness_minutes is not None else settings.reserves_staleness_minutes
        )

    def connect(self):
        """Establish Redis connection."""
        try:
            self.client = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                decode_responses=True,
            )
            # Test connection
            self.client.ping()
            logger.info("Connected to Redis")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    def close(self):
        """Close Redis connection."""
        if self.client:
            self.client.close()
            self.client = None

    def fetch_reserves(self, pool_id: str) -> ReserveSnapshot:
        """Return the published reserves for ``pool_id``.

        Raises:
            DataSourceUnavailable: Redis failed, the pool has no data, the
                payload is malformed, or the snapshot is stale.
        """
        if self.client is None:
            raise DataSourceUnavailable("Redis client is not connected")

        try:
            data_str = self.client.hget(self.reserves_key, pool_id)
        except redis.RedisError as e:
            raise DataSourceUnavailable(f"Redis read failed for {pool_id}: {e}") from e

        if not data_str:
            raise DataSourceUnavailable(f"No reserve data published for {pool_id}")

        snapshot = self._parse(pool_id, data_str)

        if self._is_stale(snapshot.timestamp):
            raise DataSourceUnavailable(
                f"Reserve data for {pool_id} is stale "
                f"(updated_at={snapshot.timestamp.isoformat()}, "
                f"threshold={self.staleness_minutes}min)"
            )
        return snapshot

    def _parse(self, pool_id: str, data_str: str) -> ReserveSnapshot:
        try:
            data = json.loads(data_str)
            timestamp = datetime.fromisoformat(data["updated_at"])
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            return ReserveSnapshot(
                reserve_a=Decimal(str(data["reserve_a"])),
                reserve_b=Decimal(str(data["reserve_b"])),
                total_shares=Decimal(str(data.get("total_shares", "0"))),
                timestamp=timestamp,
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise DataSourceUnavailable(f"Malformed reserve data for {pool_id}: {e}") from e

    def _is_stale(self, updated_at: datetime) -> bool:
        if not self.staleness_minutes:
            return False
        age = datetime.now(timezone.utc) - updated_at
        return age > timedelta(minutes=self.staleness_minutes)
