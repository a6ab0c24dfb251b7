"""
Transaction — неизменяемый граф inputs + commands

Модель данных:
- Input: pure-значение (тип + значение) или ссылка на объект (id + версия)
- Reference: InputRef(index) или ResultRef(command_index, slot)
- Command: закрытый tagged union — SplitCoins / MergeCoins / InvokeEntry /
  TransferObjects / MakeMoveVec
- Transaction: упорядоченные inputs + упорядоченные commands

Все модели frozen. Инварианты причинного порядка проверяет
ReferenceResolver (src.ptb.resolver), а не сами модели: модель описывает
форму, resolver — допустимость графа.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .values import (
    PureType,
    ValueKind,
    kind_of_object_type,
    normalize_address,
    normalize_target,
    validate_pure_value,
)


# =============================================================================
# INPUTS
# =============================================================================


class ObjectOwnership(str, Enum):
    """Способ, которым объект передаётся в транзакцию."""

    OWNED = "owned"  # owned или immutable объект отправителя
    SHARED = "shared"  # shared-объект (версия — точка compare-and-set)
    RECEIVING = "receiving"  # объект, отправленный на адрес другого объекта


class PureInput(BaseModel):
    """Pure-значение, известное на этапе построения."""

    tag: Literal["pure"] = "pure"
    type: PureType = Field(..., description="Тип значения")
    value: Union[bool, int, str, bytes] = Field(..., description="Значение")

    model_config = {"frozen": True}

    @field_validator("value")
    @classmethod
    def validate_value(cls, v, info):
        """Диапазон целых и нормализация адресов."""
        if "type" not in info.data:
            return v
        return validate_pure_value(info.data["type"], v)

    @property
    def kind(self) -> ValueKind:
        return self.type.kind


class ObjectInput(BaseModel):
    """Ссылка на объект ledger с ожидаемой версией."""

    tag: Literal["object"] = "object"
    object_id: str = Field(..., description="Идентификатор объекта")
    version: int = Field(..., ge=0, lt=2**64, description="Ожидаемая версия объекта")
    ownership: ObjectOwnership = Field(
        default=ObjectOwnership.OWNED, description="Способ передачи объекта"
    )
    mutable: bool = Field(default=True, description="Изменяемый доступ (для shared)")
    type_tag: Optional[str] = Field(default=None, description="Полный тип объекта")

    model_config = {"frozen": True}

    @field_validator("object_id")
    @classmethod
    def validate_object_id(cls, v: str) -> str:
        return normalize_address(v)

    @property
    def kind(self) -> ValueKind:
        return kind_of_object_type(self.type_tag)


Input = Annotated[Union[PureInput, ObjectInput], Field(discriminator="tag")]


# =============================================================================
# REFERENCES
# =============================================================================


class InputRef(BaseModel):
    """Ссылка на объявленный input (по индексу объявления)."""

    tag: Literal["input"] = "input"
    index: int = Field(..., ge=0, lt=2**16)

    model_config = {"frozen": True}

    def __repr__(self) -> str:
        return f"Input({self.index})"


class ResultRef(BaseModel):
    """Ссылка на слот результата ранее объявленной команды."""

    tag: Literal["result"] = "result"
    command_index: int = Field(..., ge=0, lt=2**16)
    slot: int = Field(default=0, ge=0, lt=2**16)

    model_config = {"frozen": True}

    def __repr__(self) -> str:
        return f"Result({self.command_index}, {self.slot})"


Reference = Annotated[Union[InputRef, ResultRef], Field(discriminator="tag")]


# =============================================================================
# COMMANDS
# =============================================================================


class SplitCoins(BaseModel):
    """Отщепление монет заданных номиналов от source (по одной на amount)."""

    tag: Literal["split_coins"] = "split_coins"
    source: Reference
    amounts: tuple[Reference, ...] = Field(..., min_length=1)

    model_config = {"frozen": True}


class MergeCoins(BaseModel):
    """Слияние sources в destination (sources потребляются)."""

    tag: Literal["merge_coins"] = "merge_coins"
    destination: Reference
    sources: tuple[Reference, ...] = Field(..., min_length=1)

    model_config = {"frozen": True}


class InvokeEntry(BaseModel):
    """
    Вызов entry-функции смарт-контракта.

    result_kinds фиксирует грубые типы возвращаемых значений: они входят в
    каноническое представление, чтобы декодер мог проверить граф без
    внешнего реестра сигнатур.
    """

    tag: Literal["invoke_entry"] = "invoke_entry"
    target: str = Field(..., description="package::module::function")
    type_arguments: tuple[str, ...] = Field(default=())
    arguments: tuple[Reference, ...] = Field(default=())
    result_kinds: tuple[ValueKind, ...] = Field(default=())

    model_config = {"frozen": True}

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        return normalize_target(v)


class TransferObjects(BaseModel):
    """Передача объектов получателю (объекты потребляются)."""

    tag: Literal["transfer_objects"] = "transfer_objects"
    objects: tuple[Reference, ...] = Field(..., min_length=1)
    recipient: Reference

    model_config = {"frozen": True}


class MakeMoveVec(BaseModel):
    """Сборка вектора из однотипных значений."""

    tag: Literal["make_move_vec"] = "make_move_vec"
    element_type: Optional[str] = Field(default=None)
    elements: tuple[Reference, ...] = Field(default=())

    model_config = {"frozen": True}


Command = Annotated[
    Union[SplitCoins, MergeCoins, InvokeEntry, TransferObjects, MakeMoveVec],
    Field(discriminator="tag"),
]


# =============================================================================
# TRANSACTION
# =============================================================================


class Transaction(BaseModel):
    """
    Неизменяемая транзакция: упорядоченные inputs и commands.

    Строится CommandGraphBuilder, сериализуется Encoder, отправляется
    ровно один раз (повторная отправка — ответственность вызывающего).
    """

    inputs: tuple[Input, ...] = Field(default=())
    commands: tuple[Command, ...] = Field(default=())

    model_config = {"frozen": True}

    def object_inputs(self) -> dict[str, ObjectInput]:
        """Объектные inputs по object_id."""
        return {
            item.object_id: item for item in self.inputs if isinstance(item, ObjectInput)
        }

    def find_object_input(self, object_id: str) -> Optional[ObjectInput]:
        """Объектный input по id (None — объект не участвует)."""
        return self.object_inputs().get(normalize_address(object_id))
