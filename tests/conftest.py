"""Shared pytest configuration for the GoClaw test suite.

Puts the project root on sys.path so tests import the flat modules directly,
points every database at a per-test temp directory, and resets the module
singletons so no state leaks between tests.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

_tmp_ctx = tempfile.TemporaryDirectory(prefix="goclaw_test_")
os.environ["GOCLAW_ENV"] = "test"
os.environ["GOCLAW_API_TOKEN"] = ""
os.environ["GOCLAW_DB_BACKEND"] = "sqlite"
os.environ["GOCLAW_DB_PATH"] = os.path.join(_tmp_ctx.name, "goclaw.db")
os.environ["GOCLAW_EVENTS_DB_PATH"] = os.path.join(_tmp_ctx.name, "events.db")
os.environ["GOCLAW_LOG_FILE"] = os.path.join(_tmp_ctx.name, "goclaw.log")
os.environ["GOCLAW_RATE_LIMIT_REQUESTS"] = "5000"
os.environ["GOCLAW_ENCRYPTION_KEY"] = "0f" * 32
os.environ["GOCLAW_MARKETPLACE_API_KEY"] = "test-akash-key"
os.environ["GOCLAW_INFERENCE_API_KEY"] = "test-inference-key"
os.environ["GOCLAW_STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

TEST_KEY = os.environ["GOCLAW_ENCRYPTION_KEY"]
TELEGRAM_TOKEN = "123456789:AAH-test_token_value"


class FakeClock:
    """Manual clock; sleep() advances it instead of blocking."""

    def __init__(self, start=1_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_storage(tmp_path, monkeypatch):
    monkeypatch.setenv("GOCLAW_DB_PATH", str(tmp_path / "goclaw.db"))
    monkeypatch.setenv("GOCLAW_EVENTS_DB_PATH", str(tmp_path / "events.db"))

    import blacklist
    import db
    import deployments
    import events
    import vault
    import worker

    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setattr(deployments, "_repo", None)
    monkeypatch.setattr(blacklist, "_blacklist", None)
    monkeypatch.setattr(events, "_event_store", None)
    monkeypatch.setattr(vault, "_vault", None)
    monkeypatch.setattr(worker, "_dispatcher", None)
    yield tmp_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    from db import Database
    return Database(backend="sqlite", path=str(tmp_path / "engine.db"))


@pytest.fixture
def repo(engine, clock):
    from deployments import DeploymentRepository
    return DeploymentRepository(engine=engine, clock=clock)


@pytest.fixture
def provider_blacklist(engine, clock):
    from blacklist import ProviderBlacklist
    return ProviderBlacklist(engine=engine, clock=clock)


@pytest.fixture
def credential_vault():
    from vault import CredentialVault
    return CredentialVault(TEST_KEY)


@pytest.fixture
def event_store(tmp_path):
    from events import EventStore
    return EventStore(db_path=str(tmp_path / "audit.db"))
