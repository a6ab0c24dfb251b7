"""
Contract Validation Module

Модуль для валидации JSON контрактов на внешних границах ядра
(payload ledger, intents для исполнителей, трассы транзакций).
"""

from .validators import (
    ContractValidator,
    EffectsValidator,
    IntentValidator,
    SchemaLoader,
    TransactionTraceValidator,
    validate_effects,
    validate_intent,
    validate_transaction_trace,
)

__all__ = [
    # Classes
    "SchemaLoader",
    "ContractValidator",
    "EffectsValidator",
    "IntentValidator",
    "TransactionTraceValidator",
    # Functions
    "validate_effects",
    "validate_intent",
    "validate_transaction_trace",
]
