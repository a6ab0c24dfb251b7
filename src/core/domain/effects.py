"""
Effects — структурированный результат исполнения транзакции ledger

Effects возвращается и для dry run (simulate), и для submit:
- success: флаг успеха
- command_outputs: значения, возвращённые командами (например, risk ratio)
- balance_changes: изменения балансов монет по (владелец, тип монеты)
- object_changes: созданные / изменённые / удалённые объекты
- error: описание отказа (только при success=False)

КРИТИЧЕСКИЙ ИНВАРИАНТ (all-or-nothing):
Неуспешный Effects не содержит ни изменений балансов, ни изменений
объектов, ни выходов команд. Отказ любой одной команды означает, что
ledger не применил НИ ОДНОГО эффекта, включая эффекты предыдущих команд.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# ENUMS
# =============================================================================


class FailureKind(str, Enum):
    """Класс отказа исполнения."""

    MOVE_ABORT = "move_abort"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    OBJECT_VERSION_CONFLICT = "object_version_conflict"
    OBJECT_NOT_FOUND = "object_not_found"
    OBJECT_NOT_OWNED = "object_not_owned"
    FUNCTION_NOT_FOUND = "function_not_found"
    INVALID_TRANSACTION = "invalid_transaction"


class ObjectChangeType(str, Enum):
    """Тип изменения объекта."""

    CREATED = "created"
    MUTATED = "mutated"
    DELETED = "deleted"


# =============================================================================
# NESTED MODELS
# =============================================================================


class ExecutionFailure(BaseModel):
    """Описание отказа исполнения."""

    kind: FailureKind = Field(..., description="Класс отказа")
    message: str = Field(..., description="Человекочитаемое описание")
    command_index: Optional[int] = Field(
        default=None, ge=0, description="Индекс команды, вызвавшей отказ"
    )
    abort_code: Optional[int] = Field(
        default=None, ge=0, description="Код abort смарт-контракта"
    )
    location: Optional[str] = Field(
        default=None, description="Модуль, в котором произошёл abort"
    )
    object_id: Optional[str] = Field(
        default=None, description="Объект, на котором произошёл отказ"
    )

    model_config = {"frozen": True}

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.command_index is not None:
            parts.append(f"command={self.command_index}")
        if self.abort_code is not None:
            parts.append(f"abort_code={self.abort_code}")
        if self.location:
            parts.append(f"location={self.location}")
        if self.object_id:
            parts.append(f"object={self.object_id}")
        return f"{' '.join(parts)}: {self.message}"


class BalanceChange(BaseModel):
    """Изменение баланса монет владельца (знаковое)."""

    owner: str
    coin_type: str
    amount: int

    model_config = {"frozen": True}


class ObjectChange(BaseModel):
    """Изменение объекта."""

    change_type: ObjectChangeType
    object_id: str
    object_type: str
    owner: Optional[str] = None
    version: int = Field(..., ge=0)

    model_config = {"frozen": True}


class CommandOutput(BaseModel):
    """Значения, возвращённые одной командой (object id или pure-значения)."""

    command_index: int = Field(..., ge=0)
    values: tuple[Union[bool, int, str], ...] = Field(default=())

    model_config = {"frozen": True}


# =============================================================================
# EFFECTS
# =============================================================================


class Effects(BaseModel):
    """
    Результат исполнения транзакции.

    Immutable модель (frozen=True).
    """

    success: bool
    digest: Optional[str] = Field(default=None, description="Digest транзакции")
    gas_used: int = Field(default=0, ge=0)
    command_outputs: tuple[CommandOutput, ...] = Field(default=())
    balance_changes: tuple[BalanceChange, ...] = Field(default=())
    object_changes: tuple[ObjectChange, ...] = Field(default=())
    error: Optional[ExecutionFailure] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def validate_atomicity(self) -> "Effects":
        """success ↔ нет ошибки; неуспех ↔ нет эффектов."""
        if self.success and self.error is not None:
            raise ValueError("successful effects must not carry an error")
        if not self.success:
            if self.error is None:
                raise ValueError("failed effects must carry an error descriptor")
            if self.balance_changes or self.object_changes or self.command_outputs:
                raise ValueError("failed effects must not carry any changes")
        return self

    @classmethod
    def failure(
        cls, failure: ExecutionFailure, digest: Optional[str] = None, gas_used: int = 0
    ) -> "Effects":
        """Effects отказа (без каких-либо изменений)."""
        return cls(success=False, digest=digest, gas_used=gas_used, error=failure)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Effects":
        """
        Построение Effects из JSON payload внешнего ledger.

        Payload проверяется по контракту effects.json до построения модели.

        Raises:
            jsonschema.ValidationError: payload не соответствует контракту
            pydantic.ValidationError: нарушены инварианты модели
        """
        from src.core.contracts import validate_effects

        validate_effects(payload)
        return cls.model_validate(payload)

    def balance_delta(self, owner: str, coin_type: str) -> int:
        """Суммарное изменение баланса владельца по типу монеты."""
        return sum(
            change.amount
            for change in self.balance_changes
            if change.owner == owner and change.coin_type == coin_type
        )

    def created_objects(self, type_contains: Optional[str] = None) -> list[ObjectChange]:
        """Созданные объекты (опционально — фильтр по подстроке типа)."""
        return [
            change
            for change in self.object_changes
            if change.change_type == ObjectChangeType.CREATED
            and (type_contains is None or type_contains in change.object_type)
        ]

    def object_change(self, object_id: str) -> Optional[ObjectChange]:
        """Изменение конкретного объекта (None — объект не затронут)."""
        for change in self.object_changes:
            if change.object_id == object_id:
                return change
        return None

    def output(self, command_index: int, slot: int = 0):
        """
        Значение, возвращённое командой.

        Raises:
            KeyError: если команда не вернула значение в этом слоте
        """
        for item in self.command_outputs:
            if item.command_index == command_index:
                if slot >= len(item.values):
                    break
                return item.values[slot]
        raise KeyError(f"no output at command {command_index}, slot {slot}")
