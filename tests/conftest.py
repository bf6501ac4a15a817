import hashlib
import json
import os
import sys

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service.config import get_settings


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Settings tuned for tests: no backoff sleeps, short polls, no redis, no ceiling."""
    s = get_settings()
    overrides = {
        "RETRY_MAX_ATTEMPTS": 3,
        "RETRY_BASE_DELAY_SECONDS": 0.0,
        "RETRY_JITTER_SECONDS": 0.0,
        "NODE_TIMEOUT_SECONDS": 5.0,
        "RUN_WALL_CLOCK_SECONDS": 30.0,
        "RUN_MAX_CONCURRENCY": 4,
        "GLOBAL_MAX_CONCURRENCY": 16,
        "BUDGET_POLICY": "soft",
        "BUDGET_CEILING_USD": 0.0,
        "REDIS_CACHE_ENABLED": False,
        "REDIS_EVENTS_ENABLED": False,
        "CACHE_LEASE_POLL_SECONDS": 0.01,
        "OUTBOX_POLL_INTERVAL_SECONDS": 0.05,
        "OUTBOX_BASE_DELAY_SECONDS": 0.0,
        "OUTBOX_MAX_RETRIES": 3,
        "ADMIN_TOKEN": "",
    }
    for name, value in overrides.items():
        monkeypatch.setattr(s, name, value)
    return s


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'planner.db'}"


def _hash_embedding(payload, dims=8):
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).digest()
    return [b / 255.0 for b in digest[:dims]]


@pytest.fixture
def embed():
    """Deterministic embedding provider keyed on the payload's JSON form."""
    return _hash_embedding
