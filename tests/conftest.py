"""Shared fixtures.

Settings and the engine are built at import time, so the environment is
pinned here before anything from ``deenhub`` is imported.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="deenhub-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["ENVIRONMENT"] = "development"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["SYNC_ENABLED"] = "false"
os.environ["WORKER_ENABLED"] = "false"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["CACHE_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "true"
os.environ["SYNC_INTER_CALL_DELAY_MS"] = "0"
os.environ["TRANSLATION_BATCH_DELAY_MS"] = "0"
os.environ["UPSTREAM_BACKOFF_FACTOR"] = "0"
os.environ["UPSTREAM_RETRY_JITTER_SECONDS"] = "0"
os.environ.pop("REDIS_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402

from deenhub.api.services.upstream_client import UpstreamClient  # noqa: E402
from deenhub.core.cache import cache_manager  # noqa: E402
from deenhub.core.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from deenhub.core.database import Base, SessionLocal, engine  # noqa: E402
from deenhub.core.rate_limit import rate_limiter  # noqa: E402
from deenhub.core.retry import RetryPolicy  # noqa: E402

ADMIN_KEY = "test-admin-key"


@pytest.fixture(autouse=True)
def reset_cache():
    """Fresh in-memory counters, cache and rule snapshot for every test."""
    cache_manager._cache = None
    cache_manager._cache_type = "none"
    rate_limiter.invalidate_rules()
    yield
    cache_manager._cache = None
    rate_limiter.invalidate_rules()


@pytest.fixture
def db_session():
    """Empty schema and a session bound to it."""
    from deenhub import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_session):
    """TestClient with the app lifespan running."""
    from fastapi.testclient import TestClient

    from deenhub.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


def make_client(handler, base_url: str = "https://upstream.test", max_retries: int = 0) -> UpstreamClient:
    """UpstreamClient answering from ``handler`` with its own breakers."""
    return UpstreamClient(
        base_url,
        policy=RetryPolicy(max_retries=max_retries, backoff_factor=0.0),
        breakers=CircuitBreakerRegistry(),
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def upstream():
    """Factory for upstream clients backed by a request handler."""
    return make_client
