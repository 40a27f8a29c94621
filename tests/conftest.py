from __future__ import annotations

import pytest

from helpers import FakeMedia, FakeNetwork
from service.client import PairingClient
from service.relay import LocalRelay


@pytest.fixture
def relay() -> LocalRelay:
    return LocalRelay()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def media() -> FakeMedia:
    return FakeMedia()


@pytest.fixture
def make_client(relay, network):
    def factory(client_id: str, **kwargs) -> PairingClient:
        kwargs.setdefault("transport_factory", network.create)
        kwargs.setdefault("subscribe_timeout", 1.0)
        return PairingClient(kwargs.pop("relay", relay), client_id=client_id, **kwargs)

    return factory
