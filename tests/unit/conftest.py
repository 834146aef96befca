"""Shared fixtures for the orerecon unit tests."""

import pytest
import pytest_asyncio

from fakes import FakeHelius
from orerecon.finalizer import Finalizer
from orerecon.reconstruction import ReconstructionEngine
from orerecon.storage import StorageManager
from orerecon.workflow import FinalizeGate, RoundWorkflow


# ── Storage ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:", ":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


# ── Services ────────────────────────────────────────────────────────────────

@pytest.fixture
def helius():
    return FakeHelius()


@pytest.fixture
def reconstruction(storage):
    return ReconstructionEngine(storage)


@pytest.fixture
def finalizer(storage):
    return Finalizer(storage)


@pytest.fixture
def workflow(storage, helius, reconstruction, finalizer):
    return RoundWorkflow(storage, helius, reconstruction, finalizer, FinalizeGate.ADVISORY)
