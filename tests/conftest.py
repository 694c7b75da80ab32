"""Shared fixtures for codepulse functional tests."""

import os

import pytest

from codepulse.config import IngestConfig
from codepulse.errors import InvalidCredential
from codepulse.ingest import IngestService
from codepulse.records import Heartbeat
from codepulse.store import HeartbeatStore

BASE_TIME = 1_700_000_000.0  # 2023-11-14 22:13:20 UTC


class StubVerifier:
    """Verifier resolving tokens from a fixed mapping, counting calls."""

    def __init__(self, users=None):
        self.users = dict(users or {"token-alice": "alice", "token-bob": "bob"})
        self.calls = 0

    def verify(self, token):
        self.calls += 1
        if token not in self.users:
            raise InvalidCredential("unknown token")
        return self.users[token]


def make_heartbeats(offsets, base=BASE_TIME, **fields):
    """Heartbeats at base + offset seconds, one per offset."""
    fields.setdefault('entity', '/src/app.py')
    return [Heartbeat(time=base + offset, **fields) for offset in offsets]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Strip CODEPULSE_* env vars for test isolation."""
    for key in list(os.environ):
        if key.startswith("CODEPULSE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store(tmp_path):
    """HeartbeatStore on a throwaway SQLite file."""
    store = HeartbeatStore(f"sqlite:///{tmp_path / 'codepulse.sqlite'}")
    yield store
    store.dispose()


@pytest.fixture
def verifier():
    return StubVerifier()


@pytest.fixture
def make_service(store, verifier):
    """Factory for IngestService wired to the test store and stub verifier."""
    services = []

    def _make(**overrides):
        overrides.setdefault('db_url', store.db_url)
        service = IngestService(IngestConfig(**overrides), store=store, verifier=verifier)
        services.append(service)
        return service

    yield _make
    for service in services:
        service.ingestor.close()
        service.resolver.close()


@pytest.fixture
def service(make_service):
    return make_service()
