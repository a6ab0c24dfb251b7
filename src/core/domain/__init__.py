"""
Domain models and value objects.

Contains the transaction graph (inputs, references, commands), execution
effects, ledger objects, intents and margin positions.
"""

from src.core.domain.effects import (
    BalanceChange,
    CommandOutput,
    Effects,
    ExecutionFailure,
    FailureKind,
    ObjectChange,
    ObjectChangeType,
)
from src.core.domain.intent import (
    INTENT_TYPE_MARKER,
    InputCommitment,
    Intent,
    IntentStatus,
)
from src.core.domain.ledger_object import OWNER_IMMUTABLE, OWNER_SHARED, LedgerObject
from src.core.domain.margin import MarginPosition, RiskBand
from src.core.domain.transaction import (
    Command,
    Input,
    InputRef,
    InvokeEntry,
    MakeMoveVec,
    MergeCoins,
    ObjectInput,
    ObjectOwnership,
    PureInput,
    Reference,
    ResultRef,
    SplitCoins,
    Transaction,
    TransferObjects,
)
from src.core.domain.values import (
    RESOURCE_KINDS,
    PureType,
    ValueKind,
    coin_type_of,
    coin_type_tag,
    kind_of_object_type,
    normalize_address,
    normalize_target,
    short_address,
    split_target,
)

__all__ = [
    # Values
    "RESOURCE_KINDS",
    "PureType",
    "ValueKind",
    "coin_type_of",
    "coin_type_tag",
    "kind_of_object_type",
    "normalize_address",
    "normalize_target",
    "short_address",
    "split_target",
    # Transaction graph
    "Command",
    "Input",
    "InputRef",
    "InvokeEntry",
    "MakeMoveVec",
    "MergeCoins",
    "ObjectInput",
    "ObjectOwnership",
    "PureInput",
    "Reference",
    "ResultRef",
    "SplitCoins",
    "Transaction",
    "TransferObjects",
    # Effects
    "BalanceChange",
    "CommandOutput",
    "Effects",
    "ExecutionFailure",
    "FailureKind",
    "ObjectChange",
    "ObjectChangeType",
    # Ledger objects
    "LedgerObject",
    "OWNER_IMMUTABLE",
    "OWNER_SHARED",
    # Intent
    "INTENT_TYPE_MARKER",
    "InputCommitment",
    "Intent",
    "IntentStatus",
    # Margin
    "MarginPosition",
    "RiskBand",
]
