"""
Trace — человекочитаемая трасса транзакции (inputs, commands, outputs)

Трасса проверяется по контракту transaction_trace.json перед возвратом.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from src.core.contracts import validate_transaction_trace
from src.core.domain.effects import Effects, ObjectChangeType
from src.core.domain.transaction import (
    Command,
    Input,
    InvokeEntry,
    MakeMoveVec,
    MergeCoins,
    ObjectInput,
    ObjectOwnership,
    SplitCoins,
    Transaction,
    TransferObjects,
)
from src.core.domain.values import split_target
from src.ptb.encoder import SCHEMA_VERSION, encode, encode_pure_value, transaction_digest


def _describe_input(index: int, item: Input) -> Dict[str, Any]:
    if not isinstance(item, ObjectInput):
        return {
            "index": index,
            "input_type": "Pure",
            "value": "0x" + encode_pure_value(item.type, item.value).hex(),
        }

    if item.ownership == ObjectOwnership.SHARED:
        input_type = "SharedMut" if item.mutable else "SharedImm"
    elif item.ownership == ObjectOwnership.RECEIVING:
        input_type = "Receiving"
    else:
        input_type = "Owned"
    return {
        "index": index,
        "input_type": input_type,
        "object_id": item.object_id,
        "version": item.version,
        "type_tag": item.type_tag,
    }


def _describe_command(index: int, command: Command) -> Dict[str, Any]:
    if isinstance(command, InvokeEntry):
        package, module, function = split_target(command.target)
        return {
            "index": index,
            "command_type": "MoveCall",
            "package": package,
            "module": module,
            "function": function,
            "type_args": list(command.type_arguments),
            "args": [repr(ref) for ref in command.arguments],
        }
    if isinstance(command, SplitCoins):
        refs = (command.source, *command.amounts)
        return {"index": index, "command_type": "SplitCoins", "args": [repr(ref) for ref in refs]}
    if isinstance(command, MergeCoins):
        refs = (command.destination, *command.sources)
        return {"index": index, "command_type": "MergeCoins", "args": [repr(ref) for ref in refs]}
    if isinstance(command, TransferObjects):
        refs = (*command.objects, command.recipient)
        return {
            "index": index,
            "command_type": "TransferObjects",
            "args": [repr(ref) for ref in refs],
        }
    if isinstance(command, MakeMoveVec):
        return {
            "index": index,
            "command_type": "MakeMoveVec",
            "type_args": [command.element_type] if command.element_type else [],
            "args": [repr(ref) for ref in command.elements],
        }
    raise TypeError(f"unsupported command: {type(command).__name__}")


def _describe_outputs(effects: Effects) -> Dict[str, Any]:
    return {
        "success": effects.success,
        "gas_used": effects.gas_used,
        "created_objects": [
            {"object_id": change.object_id, "object_type": change.object_type, "owner": change.owner}
            for change in effects.created_objects()
        ],
        "mutated_objects": [
            change.object_id
            for change in effects.object_changes
            if change.change_type == ObjectChangeType.MUTATED
        ],
        "error": str(effects.error) if effects.error is not None else None,
    }


def describe_transaction(
    tx: Transaction, effects: Optional[Effects] = None, label: str = ""
) -> Dict[str, Any]:
    """
    Трасса транзакции.

    Args:
        tx: транзакция
        effects: результат исполнения (секция outputs)
        label: метка трассы

    Returns:
        dict, соответствующий transaction_trace.json

    Raises:
        jsonschema.ValidationError: трасса не соответствует контракту
    """
    data = encode(tx)
    trace: Dict[str, Any] = {
        "label": label,
        "schema_version": SCHEMA_VERSION,
        "digest": transaction_digest(data),
        "encoded_size": len(data),
        "inputs": [_describe_input(index, item) for index, item in enumerate(tx.inputs)],
        "commands": [
            _describe_command(index, command) for index, command in enumerate(tx.commands)
        ],
    }
    if effects is not None:
        trace["outputs"] = _describe_outputs(effects)

    validate_transaction_trace(trace)
    return trace


def export_trace(
    path: Path, tx: Transaction, effects: Optional[Effects] = None, label: str = ""
) -> Dict[str, Any]:
    """Запись трассы в JSON-файл; возвращает записанную трассу."""
    trace = describe_transaction(tx, effects, label)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(trace, f, indent=2)
    return trace
