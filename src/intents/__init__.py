"""
Swap intents: lifecycle rules and the ledger-backed claim protocol.
"""

from src.intents.ledger import (
    BatchFillResult,
    ClaimOutcome,
    ClaimResult,
    Clock,
    IntentFilter,
    IntentLedger,
    SystemClock,
    claim_outcome_for,
)
from src.intents.state_machine import (
    IntentAbortCode,
    IntentEvent,
    IntentStateMachine,
    IntentTransitionResult,
)

__all__ = [
    # State machine
    "IntentAbortCode",
    "IntentEvent",
    "IntentStateMachine",
    "IntentTransitionResult",
    # Ledger
    "BatchFillResult",
    "ClaimOutcome",
    "ClaimResult",
    "Clock",
    "IntentFilter",
    "IntentLedger",
    "SystemClock",
    "claim_outcome_for",
]
