"""IL Guardian - Entry Point.

Connects the Redis market data feed, the position database and the
ledger gateway, registers the configured pools, and runs the monitoring
loop until SIGTERM/SIGINT.
"""

import json
import logging
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional

from .alerting import AlertDispatcher, TelegramClient, TwilioClient
from .config import settings
from .db.repository import Repository
from .guardian import ILGuardian
from .ledger_client import LedgerClient
from .redis_client import RedisMarketData

logger = logging.getLogger(__name__)

# Global guardian instance for signal handling
guardian: Optional[ILGuardian] = None


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logger.info(f"Received signal {signum}, shutting down...")
    if guardian:
        guardian.stop()


def make_health_handler(target: ILGuardian):
    """Build a request handler serving ``target.health_snapshot()`` as JSON."""

    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/health":
                self.send_response(404)
                self.end_headers()
                return
            snapshot = target.health_snapshot()
            body = json.dumps(snapshot.to_dict()).encode("utf-8")
            self.send_response(200 if snapshot.running else 503)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass  # suppress HTTP access logs

    return _Handler


def _start_health_server(target: ILGuardian) -> HTTPServer:
    """Start the health HTTP server on a daemon thread."""
    server = HTTPServer(("", settings.health_port), make_health_handler(target))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"Health server listening on :{settings.health_port}/health")
    return server


def build_guardian() -> ILGuardian:
    """Create and connect the production collaborators."""
    market_data = RedisMarketData()
    market_data.connect()

    repository = Repository()
    repository.connect()

    twilio = TwilioClient()
    if settings.twilio_enabled:
        twilio.connect()

    dispatcher = AlertDispatcher(telegram_client=TelegramClient(), twilio_client=twilio)

    instance = ILGuardian(
        market_data=market_data,
        ledger=LedgerClient(),
        repository=repository,
        dispatcher=dispatcher,
    )
    instance.register_pools(settings.monitored_pool_ids)
    return instance


def _close_collaborators(instance: ILGuardian) -> None:
    for resource in (instance.repo, instance.pool_store.market_data, instance.executor.ledger):
        close = getattr(resource, "close", None)
        if close is not None:
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing {type(resource).__name__}: {e}")


def main():
    """Main entry point."""
    global guardian

    configure_logging()

    logger.info("=" * 60)
    logger.info("IL GUARDIAN")
    logger.info("=" * 60)

    logger.info(f"Database: {settings.db_host}:{settings.db_port}/{settings.db_name}")
    logger.info(f"Redis: {settings.redis_host}:{settings.redis_port} ({settings.redis_reserves_key})")
    logger.info(f"Ledger gateway: {settings.ledger_api_url}")
    logger.info(f"Await confirmation: {settings.ledger_await_confirmation}")
    logger.info(f"Telegram enabled: {settings.telegram_enabled}")
    logger.info(f"Twilio enabled: {settings.twilio_enabled}")
    logger.info(f"Check interval: {settings.check_interval_seconds}s (backoff {settings.error_backoff_seconds}s)")
    logger.info(f"Max exit per tick: {settings.max_exit_pct}%")
    logger.info(f"Monitored pools: {settings.monitored_pool_ids or 'none'}")

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    server = None
    try:
        guardian = build_guardian()
        server = _start_health_server(guardian)
        guardian.start()
        while guardian.running:
            guardian.wait(timeout=1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if guardian:
            guardian.stop()
            _close_collaborators(guardian)
        if server:
            server.shutdown()


if __name__ == "__main__":
    main()
