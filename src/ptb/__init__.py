"""
Programmable transaction blocks.

Построение графа команд, проверка ссылок и типов, каноническое
кодирование и типизированные вызовы протокола.
"""

from src.ptb.builder import CommandGraphBuilder
from src.ptb.encoder import (
    SCHEMA_VERSION,
    decode,
    encode,
    encode_pure_value,
    transaction_digest,
)
from src.ptb.protocol import ProtocolCalls, protocol_signatures
from src.ptb.resolver import ReferenceResolver, Usage
from src.ptb.signatures import (
    EntrySignature,
    ParamSpec,
    SignatureRegistry,
    by_ref,
    by_value,
    is_compatible,
)
from src.ptb.trace import describe_transaction, export_trace

__all__ = [
    # Resolver
    "ReferenceResolver",
    "Usage",
    # Signatures
    "EntrySignature",
    "ParamSpec",
    "SignatureRegistry",
    "by_ref",
    "by_value",
    "is_compatible",
    # Builder
    "CommandGraphBuilder",
    "ProtocolCalls",
    "protocol_signatures",
    # Encoding
    "SCHEMA_VERSION",
    "decode",
    "encode",
    "encode_pure_value",
    "transaction_digest",
    # Trace
    "describe_transaction",
    "export_trace",
]
