"""
Ledger access: async client and the in-memory sandbox ledger.
"""

from src.ledger.client import LedgerBackend, ObjectPage, SimulationClient
from src.ledger.modules import (
    MarginAbortCode,
    SpotAbortCode,
    create_intent_registry,
    create_margin_pool,
    create_margin_registry,
    create_pool,
    create_price_oracle,
    create_service,
    install_protocol,
)
from src.ledger.sandbox import (
    GAS_PER_COMMAND,
    ExecutionAbort,
    ExecutionContext,
    MoveAbort,
    SandboxLedger,
)

__all__ = [
    # Client
    "LedgerBackend",
    "ObjectPage",
    "SimulationClient",
    # Sandbox
    "GAS_PER_COMMAND",
    "ExecutionAbort",
    "ExecutionContext",
    "MoveAbort",
    "SandboxLedger",
    # Protocol modules
    "MarginAbortCode",
    "SpotAbortCode",
    "create_intent_registry",
    "create_margin_pool",
    "create_margin_registry",
    "create_pool",
    "create_price_oracle",
    "create_service",
    "install_protocol",
]
