"""
Shared fixtures for orerecon integration tests.

Provides:
 - a ReconServer wired to in-memory stores and fake upstream clients,
   with background workers disabled so tests drive every step
 - a TestClient that runs the app lifespan (storage init and shutdown)
"""

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from unit.fakes import FakeFeed, FakeHelius, feed_pages


# ── Server & client ───────────────────────────────────────────────────────

@pytest.fixture
def helius():
    return FakeHelius()


@pytest.fixture
def feed():
    return FakeFeed(feed_pages(100, 71))


@pytest.fixture
def server(helius, feed):
    from orerecon.server import ReconServer
    return ReconServer(
        db_path=":memory:",
        analytics_path=":memory:",
        enable_workers=False,
        helius=helius,
        feed=feed,
    )


@pytest.fixture
def client(server):
    from fastapi.testclient import TestClient
    with TestClient(server.app) as c:
        yield c

