"""
Values — грубые типы значений, pure-типы и нормализация адресов

ValueKind — грубый тег типа значения внутри графа команд. Используется:
- ReferenceResolver: линейность (resource-значения потребляются не более одного раза)
- CommandGraphBuilder: проверка совместимости аргументов с сигнатурой

Resource (линейные) типы: object, coin, object_vector.
Все pure-типы копируемые.
"""

import re
from enum import Enum
from typing import Final


# =============================================================================
# КОНСТАНТЫ
# =============================================================================

# Длина адреса / object id в байтах
ADDRESS_LENGTH: Final[int] = 32

# Формат target entry-функции: package::module::function
_TARGET_RE: Final[re.Pattern] = re.compile(
    r"^(0x[0-9a-fA-F]{1,64})::([A-Za-z_][A-Za-z0-9_]*)::([A-Za-z_][A-Za-z0-9_]*)$"
)

_HEX_RE: Final[re.Pattern] = re.compile(r"^[0-9a-f]{1,64}$")

# Маркер типа монеты в полном type tag объекта
_COIN_TYPE_MARKER: Final[str] = "::coin::Coin<"


# =============================================================================
# ENUMS
# =============================================================================


class ValueKind(str, Enum):
    """Грубый тег типа значения в графе команд."""

    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    U128 = "u128"
    U256 = "u256"
    BOOL = "bool"
    ADDRESS = "address"
    STRING = "string"
    BYTES = "bytes"
    VECTOR = "vector"
    OBJECT = "object"
    COIN = "coin"
    OBJECT_VECTOR = "object_vector"

    @property
    def is_resource(self) -> bool:
        """Линейный (non-copyable) тип."""
        return self in RESOURCE_KINDS

    @property
    def is_object_like(self) -> bool:
        """Одиночный объект (включая монеты)."""
        return self in (ValueKind.OBJECT, ValueKind.COIN)


RESOURCE_KINDS: Final[frozenset[ValueKind]] = frozenset(
    {ValueKind.OBJECT, ValueKind.COIN, ValueKind.OBJECT_VECTOR}
)


class PureType(str, Enum):
    """Тип pure-значения, известного на этапе построения."""

    U8 = "u8"
    U16 = "u16"
    U32 = "u32"
    U64 = "u64"
    U128 = "u128"
    U256 = "u256"
    BOOL = "bool"
    ADDRESS = "address"
    STRING = "string"
    BYTES = "bytes"

    @property
    def kind(self) -> ValueKind:
        return ValueKind(self.value)

    @property
    def bit_width(self) -> int:
        """Ширина беззнакового целого в битах (0 — не целое)."""
        return _UINT_WIDTHS.get(self, 0)


_UINT_WIDTHS: Final[dict[PureType, int]] = {
    PureType.U8: 8,
    PureType.U16: 16,
    PureType.U32: 32,
    PureType.U64: 64,
    PureType.U128: 128,
    PureType.U256: 256,
}


# =============================================================================
# НОРМАЛИЗАЦИЯ
# =============================================================================


def normalize_address(address: str) -> str:
    """
    Нормализация адреса / object id к каноническому виду.

    '0x6' → '0x000…0006' (64 hex-символа, нижний регистр).

    Raises:
        ValueError: если строка не является hex-адресом длиной ≤ 32 байт
    """
    if not isinstance(address, str):
        raise ValueError(f"address must be a string, got {type(address).__name__}")
    body = address[2:] if address.startswith(("0x", "0X")) else address
    body = body.lower()
    if not _HEX_RE.match(body):
        raise ValueError(f"invalid address: {address!r}")
    return "0x" + body.rjust(ADDRESS_LENGTH * 2, "0")


def short_address(address: str) -> str:
    """Короткая форма адреса для логов: '0x000…0006' → '0x6'."""
    body = normalize_address(address)[2:].lstrip("0")
    return "0x" + (body or "0")


def split_target(target: str) -> tuple[str, str, str]:
    """
    Разбор target entry-функции.

    Returns:
        (normalized_package, module, function)

    Raises:
        ValueError: если target не в формате package::module::function
    """
    match = _TARGET_RE.match(target)
    if match is None:
        raise ValueError(f"invalid entry target: {target!r}")
    package, module, function = match.groups()
    return normalize_address(package), module, function


def normalize_target(target: str) -> str:
    """Канонический target: адрес пакета в полной форме."""
    package, module, function = split_target(target)
    return f"{package}::{module}::{function}"


def kind_of_object_type(type_tag: str | None) -> ValueKind:
    """Грубый тег объекта по его полному типу (монеты различаются отдельно)."""
    if type_tag is not None and _COIN_TYPE_MARKER in type_tag:
        return ValueKind.COIN
    return ValueKind.OBJECT


def coin_type_tag(coin_type: str) -> str:
    """Полный тип объекта-монеты: Coin<T>."""
    return f"0x2::coin::Coin<{coin_type}>"


def coin_type_of(type_tag: str) -> str | None:
    """Извлечение T из '0x2::coin::Coin<T>' (None — не монета)."""
    start = type_tag.find(_COIN_TYPE_MARKER)
    if start < 0 or not type_tag.endswith(">"):
        return None
    return type_tag[start + len(_COIN_TYPE_MARKER):-1]


def validate_pure_value(pure_type: PureType, value):
    """
    Проверка и нормализация pure-значения под его тип.

    Returns:
        нормализованное значение (адреса — в полной форме)

    Raises:
        ValueError: при несоответствии типа или выходе за диапазон
    """
    if pure_type == PureType.BOOL:
        if not isinstance(value, bool):
            raise ValueError(f"bool value expected, got {value!r}")
        return value

    if pure_type.bit_width:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{pure_type.value} value must be int, got {value!r}")
        if value < 0 or value >= (1 << pure_type.bit_width):
            raise ValueError(f"{pure_type.value} value out of range: {value}")
        return value

    if pure_type == PureType.ADDRESS:
        return normalize_address(value)

    if pure_type == PureType.STRING:
        if not isinstance(value, str):
            raise ValueError(f"string value expected, got {value!r}")
        return value

    if pure_type == PureType.BYTES:
        if not isinstance(value, (bytes, bytearray)):
            raise ValueError(f"bytes value expected, got {value!r}")
        return bytes(value)

    raise ValueError(f"unsupported pure type: {pure_type}")
