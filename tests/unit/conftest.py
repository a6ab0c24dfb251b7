"""Общие fixtures: сеть, адреса, песочница ledger с модулями протокола."""

import pytest

from src.core.config import LedgerClientConfig, get_network_config
from src.core.domain.values import normalize_address
from src.ledger import (
    SandboxLedger,
    SimulationClient,
    create_intent_registry,
    create_pool,
    install_protocol,
)


SUI = "0x2::sui::SUI"
USDC = "0xa1::usdc::USDC"
DEEP = "0xde::deep::DEEP"

ALICE = normalize_address("0xa11ce")
BOB = normalize_address("0xb0b")
CAROL = normalize_address("0xca201")

APEX_PACKAGE = "0xa9e"

START_MS = 1_700_000_000_000


@pytest.fixture
def network():
    return get_network_config("localnet", apex_package=APEX_PACKAGE)


@pytest.fixture
def sandbox(network):
    """Песочница с модулями протокола и временем START_MS."""
    ledger = SandboxLedger(now_ms=START_MS)
    install_protocol(ledger, network)
    return ledger


@pytest.fixture
def intent_registry(sandbox, network):
    return create_intent_registry(sandbox, network)


@pytest.fixture
def pool(sandbox, network):
    """SUI/USDC по 2.0 USDC за SUI (6 знаков), глубокие резервы."""
    return create_pool(
        sandbox,
        network,
        base_type=SUI,
        quote_type=USDC,
        price=2_000_000,
        price_decimals=6,
        base_reserve=10_000_000_000,
        quote_reserve=10_000_000_000,
    )


def make_client(ledger, sender, **overrides) -> SimulationClient:
    return SimulationClient(ledger, LedgerClientConfig(sender=sender, **overrides))


@pytest.fixture
def alice_client(sandbox):
    return make_client(sandbox, ALICE)


@pytest.fixture
def bob_client(sandbox):
    return make_client(sandbox, BOB)


@pytest.fixture
def carol_client(sandbox):
    return make_client(sandbox, CAROL)
