"""
Shared fixtures for claimgate tests.

Every engine built here uses the in-memory store, a low PBKDF2 iteration
count and a frozen clock so tests are fast and deterministic.
"""

import httpx
import pytest

from claimgate.config.settings import Settings
from claimgate.lookups import (
    InMemoryAccountBalances,
    InMemoryAddressLists,
    InMemoryBalanceIndex,
)
from claimgate.startup.bootstrap import build_engine
from claimgate.storage.claim_store import MemoryClaimStore
from claimgate.tests.factories import NOW_MS

TEST_KEY = "claimgate-test-key-0123456789"
TEST_ITERATIONS = 1000


class FrozenClock:
    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now


def _default_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={})


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def lists():
    return InMemoryAddressLists()


@pytest.fixture
def balances():
    return InMemoryBalanceIndex()


@pytest.fixture
def accounts():
    return InMemoryAccountBalances()


@pytest.fixture
def store():
    return MemoryClaimStore()


@pytest.fixture
def make_service(clock, lists, balances, accounts, store):
    """Factory: make_service(handler=None) -> ClaimService."""
    built = []

    def factory(handler=None):
        service = build_engine(
            Settings(sym_key=TEST_KEY, api_max_retries=2, api_backoff_base=0.0),
            store=store,
            lists=lists,
            balances=balances,
            accounts=accounts,
            transport=httpx.MockTransport(handler or _default_handler),
            sleep=lambda _s: None,
            clock=clock,
            kdf_iterations=TEST_ITERATIONS,
        )
        built.append(service)
        return service

    yield factory
    for service in built:
        service.close()


@pytest.fixture
def service(make_service):
    return make_service()
