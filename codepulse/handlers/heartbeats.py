"""Handler accepting heartbeat batches from editor plugins."""

import asyncio
import base64
import binascii
import json
import logging
from concurrent.futures import ThreadPoolExecutor

from tornado import web

from ..errors import CredentialError, StorageError, ValidationError, VerifierUnavailable
from ..records import parse_heartbeats

log = logging.getLogger('codepulse')

_ingest_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="ingest")


def extract_credential(authorization):
    """Pull the credential out of an Authorization header value.

    Accepts ``Bearer <token>`` and ``Basic <base64(token)>``; the Basic form
    may carry a trailing ``:`` from clients that send an empty password.
    """
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(' ')
    value = value.strip()
    if not value:
        return None
    scheme = scheme.lower()
    if scheme == 'bearer':
        return value
    if scheme == 'basic':
        try:
            decoded = base64.b64decode(value, validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError):
            return value
        return decoded.split(':', 1)[0] or None
    return None


class HeartbeatsHandler(web.RequestHandler):
    """POST a JSON array of heartbeats; responds with the accepted count."""

    async def post(self):
        service = self.settings['ingest_service']

        credential = extract_credential(self.request.headers.get('Authorization'))
        if not credential:
            self.set_status(401)
            return self.finish({"success": False, "error": "No credential provided"})

        try:
            body = self.request.body.decode('utf-8')
            payload = json.loads(body) if body else None
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log.error(f"[Heartbeats] Failed to parse request body: {e}")
            self.set_status(400)
            return self.finish({"success": False, "error": "Invalid JSON body"})

        # single-heartbeat endpoint shape
        if isinstance(payload, dict):
            payload = [payload]

        try:
            heartbeats = parse_heartbeats(payload)
        except ValidationError as e:
            self.set_status(400)
            return self.finish({"success": False, "error": str(e)})

        loop = asyncio.get_event_loop()
        try:
            accepted = await loop.run_in_executor(_ingest_executor, service.ingest, credential, heartbeats)
        except VerifierUnavailable as e:
            log.warning(f"[Heartbeats] Verifier unavailable: {e}")
            self.set_status(503)
            return self.finish({"success": False, "error": "Credential verification unavailable"})
        except CredentialError as e:
            log.info(f"[Heartbeats] Rejected credential: {e}")
            self.set_status(401)
            return self.finish({"success": False, "error": "Invalid credential"})
        except ValidationError as e:
            self.set_status(400)
            return self.finish({"success": False, "error": str(e)})
        except StorageError as e:
            log.error(f"[Heartbeats] Storage failure: {e}")
            self.set_status(500)
            return self.finish({"success": False, "error": "Internal error"})

        log.info(f"[Heartbeats] Accepted {accepted} heartbeat(s)")
        self.set_status(202)
        self.finish({"success": True, "accepted": accepted})
