"""Handler reporting pipeline row counts."""

import asyncio
import logging
from datetime import datetime, timezone

from tornado import web

from ..errors import StorageError
from .heartbeats import _ingest_executor

log = logging.getLogger('codepulse')


class StatusHandler(web.RequestHandler):

    async def get(self):
        service = self.settings['ingest_service']
        loop = asyncio.get_event_loop()
        try:
            counts = await loop.run_in_executor(_ingest_executor, service.status)
        except StorageError as e:
            log.error(f"[Status] Storage failure: {e}")
            self.set_status(503)
            return self.finish({"success": False, "error": "Storage unavailable"})

        self.finish({
            "success": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **counts,
        })
