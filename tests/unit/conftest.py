from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from gcli_gateway.core.services.credential_manager import (
    CooldownPolicy,
    CredentialManager,
)
from gcli_gateway.core.services.state_store import InMemoryStateStore
from tests.unit.fakes import FakeClock, FakeRefresher, make_seed


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def refresher(clock: FakeClock) -> FakeRefresher:
    return FakeRefresher(clock)


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def make_manager(
    clock: FakeClock, refresher: FakeRefresher, state_store: InMemoryStateStore
) -> Callable[..., CredentialManager]:
    """Build a manager over credentials with the given ids."""

    def _make(*ids: str, **kwargs: Any) -> CredentialManager:
        kwargs.setdefault("cooldown_policy", CooldownPolicy(30.0, 2.0, 600.0))
        manager = CredentialManager(refresher, state_store, clock=clock, **kwargs)
        manager.initialize([make_seed(i) for i in ids])
        return manager

    return _make
