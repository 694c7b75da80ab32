"""Standalone ingestion service process.

Serves the heartbeat endpoint over Tornado, owns one IngestService and runs
the pending-heartbeat sweeper in the same IOLoop.
"""

import asyncio
import logging
import sys

from tornado import web

from .config import IngestConfig
from .handlers import HeartbeatsHandler, StatusHandler
from .ingest import IngestService
from .sweeper import PendingSweeper

log = logging.getLogger('codepulse')


def make_app(service):
    """Build the Tornado application around an IngestService."""
    return web.Application(
        [
            (r"/api/v1/heartbeats", HeartbeatsHandler),
            (r"/api/v1/users/current/heartbeats(?:\.bulk)?", HeartbeatsHandler),
            (r"/api/v1/status", StatusHandler),
        ],
        ingest_service=service,
    )


async def serve(config):
    service = IngestService(config)
    sweeper = PendingSweeper(service, config.sweep_interval)
    app = make_app(service)
    server = app.listen(config.port)
    sweeper.start()
    log.info(f"Listening on port {config.port}")
    try:
        await asyncio.Event().wait()
    finally:
        sweeper.stop()
        server.stop()
        service.close()


def main():
    """Entry point for the standalone service."""
    logging.basicConfig(
        level=logging.INFO,
        format='[%(levelname)1.1s %(asctime)s.%(msecs)03d %(name)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    config = IngestConfig()
    if not config.session_secret:
        log.error("CODEPULSE_SESSION_SECRET is not set")
        sys.exit(1)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        log.info("Shutting down")
        sys.exit(0)


if __name__ == '__main__':
    main()
