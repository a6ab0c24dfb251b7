"""Signatures — объявленные сигнатуры entry-функций для проверки типов.

Сигнатура фиксирует:
- число type-параметров
- параметры: грубый тип + способ передачи (по ссылке / по значению)
- грубые типы возвращаемых значений (слоты результатов)
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Optional, Tuple

from src.core.domain.values import ValueKind, normalize_target
from src.ptb.resolver import Usage


@dataclass(frozen=True)
class ParamSpec:
    """Параметр entry-функции."""

    kind: ValueKind
    usage: Usage = Usage.CONSUME
    name: str = ""


def by_ref(kind: ValueKind, name: str = "") -> ParamSpec:
    """Параметр, передаваемый по ссылке (&T / &mut T)."""
    return ParamSpec(kind=kind, usage=Usage.BORROW, name=name)


def by_value(kind: ValueKind, name: str = "") -> ParamSpec:
    """Параметр, передаваемый по значению (линейные значения потребляются)."""
    return ParamSpec(kind=kind, usage=Usage.CONSUME, name=name)


@dataclass(frozen=True)
class EntrySignature:
    """Сигнатура entry-функции."""

    target: str
    parameters: Tuple[ParamSpec, ...] = ()
    returns: Tuple[ValueKind, ...] = ()
    type_parameter_count: int = 0
    description: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "target", normalize_target(self.target))
        if self.type_parameter_count < 0:
            raise ValueError(f"type_parameter_count must be non-negative: {self.type_parameter_count}")


def is_compatible(expected: ValueKind, actual: ValueKind) -> bool:
    """
    Грубая совместимость типа аргумента с типом параметра.

    Объект без известного типа совместим с монетой (и наоборот): на этапе
    построения тип объекта-input может быть не объявлен.
    """
    if expected == actual:
        return True
    if expected.is_object_like:
        return actual.is_object_like
    if expected in (ValueKind.VECTOR, ValueKind.BYTES):
        return actual in (ValueKind.VECTOR, ValueKind.BYTES)
    return False


class SignatureRegistry:
    """Реестр сигнатур по каноническому target."""

    def __init__(self, signatures: Iterable[EntrySignature] = ()):
        self._signatures: Dict[str, EntrySignature] = {}
        for signature in signatures:
            self.register(signature)

    def register(self, signature: EntrySignature) -> None:
        """
        Регистрация сигнатуры.

        Raises:
            ValueError: target уже зарегистрирован с другой сигнатурой
        """
        existing = self._signatures.get(signature.target)
        if existing is not None and existing != signature:
            raise ValueError(f"conflicting signature for {signature.target}")
        self._signatures[signature.target] = signature

    def get(self, target: str) -> Optional[EntrySignature]:
        return self._signatures.get(normalize_target(target))

    def __contains__(self, target: str) -> bool:
        return self.get(target) is not None

    def __len__(self) -> int:
        return len(self._signatures)

    def __iter__(self) -> Iterator[EntrySignature]:
        return iter(self._signatures.values())
