"""
Encoder — каноническое бинарное представление транзакции

Формат (версия схемы 1):

    transaction  := version:u8  uleb(n) input*n  uleb(m) command*m
    input        := 0x00 pure_type:u8 pure_value
                  | 0x01 object_id:[32] version:u64 ownership:u8 mutable:bool option<string>
    reference    := 0x00 index:u16
                  | 0x01 command_index:u16 slot:u16
    command      := 0x00 package:[32] string string uleb(k) string*k
                         uleb(a) reference*a uleb(r) value_kind:u8*r      (InvokeEntry)
                  | 0x01 uleb(n) reference*n reference                   (TransferObjects)
                  | 0x02 reference uleb(n) reference*n                   (SplitCoins)
                  | 0x03 reference uleb(n) reference*n                   (MergeCoins)
                  | 0x05 option<string> uleb(n) reference*n              (MakeMoveVec)

Целые — little-endian фиксированной ширины, длины — ULEB128 в минимальной
форме, строки — UTF-8 с префиксом длины, адреса — 32 байта.

Закон round-trip: decode(encode(t)) == t для любой t, построенной builder.
decode никогда не "чинит" вход: неизвестный тег, усечение, хвостовые байты
или нарушение причинного порядка ссылок — MalformedTransaction.
"""

import hashlib
from typing import Final, Optional, Tuple, Union

from pydantic import ValidationError

from src.core.config import BuilderConfig
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
    TransferObjects,
    Transaction,
)
from src.core.domain.values import ADDRESS_LENGTH, PureType, ValueKind, split_target
from src.core.errors import BuildError, MalformedTransaction
from src.ptb.builder import CommandGraphBuilder
from src.ptb.signatures import SignatureRegistry


# =============================================================================
# КОНСТАНТЫ
# =============================================================================

SCHEMA_VERSION: Final[int] = 1
SUPPORTED_SCHEMA_VERSIONS: Final[frozenset[int]] = frozenset({SCHEMA_VERSION})

_INPUT_PURE: Final[int] = 0
_INPUT_OBJECT: Final[int] = 1

_REF_INPUT: Final[int] = 0
_REF_RESULT: Final[int] = 1

_CMD_INVOKE: Final[int] = 0
_CMD_TRANSFER: Final[int] = 1
_CMD_SPLIT: Final[int] = 2
_CMD_MERGE: Final[int] = 3
_CMD_MAKE_MOVE_VEC: Final[int] = 5

_OWNERSHIP_TAGS: Final[dict[ObjectOwnership, int]] = {
    ObjectOwnership.OWNED: 0,
    ObjectOwnership.SHARED: 1,
    ObjectOwnership.RECEIVING: 2,
}

_PURE_TYPE_TAGS: Final[dict[PureType, int]] = {
    PureType.U8: 0,
    PureType.U16: 1,
    PureType.U32: 2,
    PureType.U64: 3,
    PureType.U128: 4,
    PureType.U256: 5,
    PureType.BOOL: 6,
    PureType.ADDRESS: 7,
    PureType.STRING: 8,
    PureType.BYTES: 9,
}

_VALUE_KIND_TAGS: Final[dict[ValueKind, int]] = {
    ValueKind.U8: 0,
    ValueKind.U16: 1,
    ValueKind.U32: 2,
    ValueKind.U64: 3,
    ValueKind.U128: 4,
    ValueKind.U256: 5,
    ValueKind.BOOL: 6,
    ValueKind.ADDRESS: 7,
    ValueKind.STRING: 8,
    ValueKind.BYTES: 9,
    ValueKind.VECTOR: 10,
    ValueKind.OBJECT: 11,
    ValueKind.COIN: 12,
    ValueKind.OBJECT_VECTOR: 13,
}


def _invert(mapping: dict) -> dict:
    return {tag: key for key, tag in mapping.items()}


_OWNERSHIP_BY_TAG: Final = _invert(_OWNERSHIP_TAGS)
_PURE_TYPE_BY_TAG: Final = _invert(_PURE_TYPE_TAGS)
_VALUE_KIND_BY_TAG: Final = _invert(_VALUE_KIND_TAGS)


# =============================================================================
# ЗАПИСЬ
# =============================================================================


class _Writer:
    def __init__(self):
        self._buffer = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    def u8(self, value: int) -> None:
        self._buffer.append(value)

    def uint(self, value: int, width_bits: int) -> None:
        self._buffer += value.to_bytes(width_bits // 8, "little")

    def boolean(self, value: bool) -> None:
        self.u8(1 if value else 0)

    def uleb128(self, value: int) -> None:
        while True:
            byte = value & 0x7F
            value >>= 7
            if value:
                self._buffer.append(byte | 0x80)
            else:
                self._buffer.append(byte)
                return

    def raw_bytes(self, value: bytes) -> None:
        self.uleb128(len(value))
        self._buffer += value

    def string(self, value: str) -> None:
        self.raw_bytes(value.encode("utf-8"))

    def option_string(self, value: Optional[str]) -> None:
        if value is None:
            self.u8(0)
        else:
            self.u8(1)
            self.string(value)

    def address(self, value: str) -> None:
        self._buffer += bytes.fromhex(value[2:])


def encode_pure_value(pure_type: PureType, value) -> bytes:
    """Каноническое представление pure-значения (без тега типа)."""
    writer = _Writer()
    _write_pure_value(writer, pure_type, value)
    return writer.getvalue()


def _write_pure_value(writer: _Writer, pure_type: PureType, value) -> None:
    if pure_type.bit_width:
        writer.uint(value, pure_type.bit_width)
    elif pure_type == PureType.BOOL:
        writer.boolean(value)
    elif pure_type == PureType.ADDRESS:
        writer.address(value)
    elif pure_type == PureType.STRING:
        writer.string(value)
    elif pure_type == PureType.BYTES:
        writer.raw_bytes(value)
    else:
        raise TypeError(f"unsupported pure type: {pure_type}")


def _write_input(writer: _Writer, item: Input) -> None:
    if isinstance(item, PureInput):
        writer.u8(_INPUT_PURE)
        writer.u8(_PURE_TYPE_TAGS[item.type])
        _write_pure_value(writer, item.type, item.value)
    elif isinstance(item, ObjectInput):
        writer.u8(_INPUT_OBJECT)
        writer.address(item.object_id)
        writer.uint(item.version, 64)
        writer.u8(_OWNERSHIP_TAGS[item.ownership])
        writer.boolean(item.mutable)
        writer.option_string(item.type_tag)
    else:
        raise TypeError(f"unsupported input: {type(item).__name__}")


def _write_reference(writer: _Writer, ref: Reference) -> None:
    if isinstance(ref, InputRef):
        writer.u8(_REF_INPUT)
        writer.uint(ref.index, 16)
    else:
        writer.u8(_REF_RESULT)
        writer.uint(ref.command_index, 16)
        writer.uint(ref.slot, 16)


def _write_references(writer: _Writer, refs: Tuple[Reference, ...]) -> None:
    writer.uleb128(len(refs))
    for ref in refs:
        _write_reference(writer, ref)


def _write_command(writer: _Writer, command: Command) -> None:
    if isinstance(command, InvokeEntry):
        package, module, function = split_target(command.target)
        writer.u8(_CMD_INVOKE)
        writer.address(package)
        writer.string(module)
        writer.string(function)
        writer.uleb128(len(command.type_arguments))
        for type_argument in command.type_arguments:
            writer.string(type_argument)
        _write_references(writer, command.arguments)
        writer.uleb128(len(command.result_kinds))
        for kind in command.result_kinds:
            writer.u8(_VALUE_KIND_TAGS[kind])
    elif isinstance(command, TransferObjects):
        writer.u8(_CMD_TRANSFER)
        _write_references(writer, command.objects)
        _write_reference(writer, command.recipient)
    elif isinstance(command, SplitCoins):
        writer.u8(_CMD_SPLIT)
        _write_reference(writer, command.source)
        _write_references(writer, command.amounts)
    elif isinstance(command, MergeCoins):
        writer.u8(_CMD_MERGE)
        _write_reference(writer, command.destination)
        _write_references(writer, command.sources)
    elif isinstance(command, MakeMoveVec):
        writer.u8(_CMD_MAKE_MOVE_VEC)
        writer.option_string(command.element_type)
        _write_references(writer, command.elements)
    else:
        raise TypeError(f"unsupported command: {type(command).__name__}")


def encode(tx: Transaction) -> bytes:
    """
    Каноническое кодирование транзакции.

    Функция детерминирована: равные транзакции дают равные байты.
    """
    writer = _Writer()
    writer.u8(SCHEMA_VERSION)
    writer.uleb128(len(tx.inputs))
    for item in tx.inputs:
        _write_input(writer, item)
    writer.uleb128(len(tx.commands))
    for command in tx.commands:
        _write_command(writer, command)
    return writer.getvalue()


def transaction_digest(tx_or_bytes: Union[Transaction, bytes]) -> str:
    """Digest транзакции: blake2b-256 канонических байтов (hex)."""
    data = tx_or_bytes if isinstance(tx_or_bytes, bytes) else encode(tx_or_bytes)
    return hashlib.blake2b(data, digest_size=32).hexdigest()


# =============================================================================
# ЧТЕНИЕ
# =============================================================================


class _Reader:
    def __init__(self, data: bytes):
        self._data = data
        self.offset = 0

    def _take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self._data):
            raise MalformedTransaction(
                f"unexpected end of input (need {size} byte(s))", self.offset
            )
        chunk = self._data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def uint(self, width_bits: int) -> int:
        return int.from_bytes(self._take(width_bits // 8), "little")

    def boolean(self) -> bool:
        offset = self.offset
        value = self.u8()
        if value not in (0, 1):
            raise MalformedTransaction(f"invalid bool byte {value:#04x}", offset)
        return value == 1

    def uleb128(self) -> int:
        offset = self.offset
        value = 0
        shift = 0
        while True:
            byte = self.u8()
            value |= (byte & 0x7F) << shift
            if not byte & 0x80:
                break
            shift += 7
            if shift >= 32:
                raise MalformedTransaction("ULEB128 length overflows u32", offset)
        if byte == 0 and shift > 0:
            raise MalformedTransaction("non-canonical ULEB128 encoding", offset)
        return value

    def raw_bytes(self) -> bytes:
        return self._take(self.uleb128())

    def string(self) -> str:
        offset = self.offset
        data = self.raw_bytes()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedTransaction("invalid UTF-8 string", offset) from e

    def option_string(self) -> Optional[str]:
        offset = self.offset
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return self.string()
        raise MalformedTransaction(f"invalid option tag {tag}", offset)

    def address(self) -> str:
        return "0x" + self._take(ADDRESS_LENGTH).hex()

    def tag(self, mapping: dict, what: str):
        offset = self.offset
        value = self.u8()
        if value not in mapping:
            raise MalformedTransaction(f"unknown {what} tag {value}", offset)
        return mapping[value]

    def expect_end(self) -> None:
        if self.offset != len(self._data):
            raise MalformedTransaction(
                f"{len(self._data) - self.offset} trailing byte(s)", self.offset
            )


def _read_pure_value(reader: _Reader, pure_type: PureType):
    if pure_type.bit_width:
        return reader.uint(pure_type.bit_width)
    if pure_type == PureType.BOOL:
        return reader.boolean()
    if pure_type == PureType.ADDRESS:
        return reader.address()
    if pure_type == PureType.STRING:
        return reader.string()
    return reader.raw_bytes()


def _read_input(reader: _Reader) -> Input:
    offset = reader.offset
    tag = reader.u8()
    if tag == _INPUT_PURE:
        pure_type = reader.tag(_PURE_TYPE_BY_TAG, "pure type")
        return PureInput(type=pure_type, value=_read_pure_value(reader, pure_type))
    if tag == _INPUT_OBJECT:
        return ObjectInput(
            object_id=reader.address(),
            version=reader.uint(64),
            ownership=reader.tag(_OWNERSHIP_BY_TAG, "ownership"),
            mutable=reader.boolean(),
            type_tag=reader.option_string(),
        )
    raise MalformedTransaction(f"unknown input tag {tag}", offset)


def _read_reference(reader: _Reader) -> Reference:
    offset = reader.offset
    tag = reader.u8()
    if tag == _REF_INPUT:
        return InputRef(index=reader.uint(16))
    if tag == _REF_RESULT:
        return ResultRef(command_index=reader.uint(16), slot=reader.uint(16))
    raise MalformedTransaction(f"unknown reference tag {tag}", offset)


def _read_references(reader: _Reader) -> Tuple[Reference, ...]:
    return tuple(_read_reference(reader) for _ in range(reader.uleb128()))


def _read_command(reader: _Reader) -> Command:
    offset = reader.offset
    tag = reader.u8()
    if tag == _CMD_INVOKE:
        package = reader.address()
        module = reader.string()
        function = reader.string()
        type_arguments = tuple(reader.string() for _ in range(reader.uleb128()))
        arguments = _read_references(reader)
        result_kinds = tuple(
            reader.tag(_VALUE_KIND_BY_TAG, "value kind") for _ in range(reader.uleb128())
        )
        return InvokeEntry(
            target=f"{package}::{module}::{function}",
            type_arguments=type_arguments,
            arguments=arguments,
            result_kinds=result_kinds,
        )
    if tag == _CMD_TRANSFER:
        objects = _read_references(reader)
        return TransferObjects(objects=objects, recipient=_read_reference(reader))
    if tag == _CMD_SPLIT:
        source = _read_reference(reader)
        return SplitCoins(source=source, amounts=_read_references(reader))
    if tag == _CMD_MERGE:
        destination = _read_reference(reader)
        return MergeCoins(destination=destination, sources=_read_references(reader))
    if tag == _CMD_MAKE_MOVE_VEC:
        element_type = reader.option_string()
        return MakeMoveVec(element_type=element_type, elements=_read_references(reader))
    raise MalformedTransaction(f"unknown command tag {tag}", offset)


def decode(data: bytes, signatures: Optional[SignatureRegistry] = None) -> Transaction:
    """
    Декодирование канонических байтов с проверкой графа.

    Args:
        data: байты, полученные encode
        signatures: реестр сигнатур; без него аргументы вызовов считаются
            заимствованными (линейность проверяется только встроенными командами)

    Без реестра декодер мягче builder'а: граф, передающий одну
    монету по значению в два неизвестных вызова, принимается, хотя
    CommandGraphBuilder с consume_unknown_arguments=True его отклонит.
    Заимствование &mut T по байтам не отличить от передачи по значению,
    поэтому полную проверку линейности даёт только decode с реестром.

    Raises:
        MalformedTransaction: любое нарушение формата или инвариантов графа
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise MalformedTransaction(f"expected bytes, got {type(data).__name__}")

    reader = _Reader(bytes(data))
    offset = reader.offset
    try:
        version = reader.u8()
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise MalformedTransaction(f"unsupported schema version {version}", offset)

        inputs = []
        for _ in range(reader.uleb128()):
            offset = reader.offset
            inputs.append(_read_input(reader))
        commands = []
        for _ in range(reader.uleb128()):
            offset = reader.offset
            commands.append(_read_command(reader))
        reader.expect_end()

        tx = Transaction(inputs=tuple(inputs), commands=tuple(commands))
    except ValidationError as e:
        error = e.errors()[0]
        raise MalformedTransaction(f"invalid structure: {error['msg']}", offset) from e

    try:
        CommandGraphBuilder.from_transaction(
            tx,
            signatures=signatures,
            config=BuilderConfig(consume_unknown_arguments=False),
        )
    except BuildError as e:
        raise MalformedTransaction(f"invalid command graph: {e}") from e

    return tx
