"""Credential resolution: unwrap, verify with timeout, cache positive results."""

import base64
import binascii
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import jwt

from .credential_cache import CredentialCache
from .errors import CredentialError, ExpiredCredential, InvalidCredential, VerifierUnavailable

log = logging.getLogger('codepulse')


def _looks_like_jwt(value):
    parts = value.split('.')
    return len(parts) == 3 and all(parts)


def unwrap_credential(credential):
    """Return the signed token inside a credential.

    Plugins send either the token itself or base64(token); anything that does
    not decode to a token is returned unchanged and left to the verifier.
    """
    credential = credential.strip()
    if _looks_like_jwt(credential):
        return credential
    try:
        padded = credential + '=' * (-len(credential) % 4)
        decoded = base64.b64decode(padded, validate=True).decode('utf-8').strip()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return credential
    return decoded if _looks_like_jwt(decoded) else credential


class JwtVerifier:
    """Verify HS256 session tokens and return the user id claim."""

    def __init__(self, secret, algorithms=('HS256',)):
        if not secret:
            raise ValueError("JwtVerifier requires a signing secret")
        self._secret = secret
        self._algorithms = list(algorithms)

    def verify(self, token):
        try:
            payload = jwt.decode(token, self._secret, algorithms=self._algorithms)
        except jwt.ExpiredSignatureError as e:
            raise ExpiredCredential("credential expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidCredential(f"credential rejected: {e}") from e

        user_id = payload.get('userId', payload.get('sub'))
        if user_id is None or user_id == '':
            raise InvalidCredential("credential carries no user id")
        return str(user_id)


class CredentialResolver:
    """Resolve a credential to a user id, consulting the cache first.

    Usage:
        resolver = CredentialResolver(JwtVerifier(secret), CredentialCache(3600))
        user_id = resolver.resolve(credential)

    Failures are never cached, so a verifier outage cannot evict or poison a
    credential that resolved earlier.
    """

    def __init__(self, verifier, cache=None, timeout_seconds=5):
        self.verifier = verifier
        self.cache = cache if cache is not None else CredentialCache()
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="credential-verify")

    def resolve(self, credential):
        if not credential:
            raise InvalidCredential("no credential presented")

        user_id = self.cache.get(credential)
        if user_id is not None:
            return user_id

        token = unwrap_credential(credential)
        future = self._executor.submit(self.verifier.verify, token)
        try:
            user_id = future.result(timeout=self.timeout_seconds)
        except FutureTimeout as e:
            future.cancel()
            log.warning(f"[CredentialResolver] Verifier timed out after {self.timeout_seconds}s")
            raise VerifierUnavailable("credential verifier timed out") from e
        except CredentialError:
            raise
        except Exception as e:
            log.error(f"[CredentialResolver] Verifier failed: {e}")
            raise VerifierUnavailable(f"credential verifier failed: {e}") from e

        self.cache.put(credential, user_id)
        log.debug(f"[CredentialResolver] Resolved credential for user {user_id}")
        return user_id

    def close(self):
        self.cache.clear()
        self._executor.shutdown(wait=False)
