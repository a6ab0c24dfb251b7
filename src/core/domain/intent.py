"""
Intent — декларативная заявка на обмен с эскроу входного актива

Жизненный цикл:
    OPEN → FILLED     (терминальное, успешное исполнение исполнителем)
    OPEN → EXPIRED    (терминальное, по времени)
    OPEN → CANCELLED  (терминальное, инициатор — создатель)

EXPIRED — производное состояние на чтении: OPEN + now ≥ deadline
наблюдается как EXPIRED без активного перехода. Возврат эскроу всё равно
требует отдельной транзакции (reclaim).
"""

from enum import Enum
from typing import Final, Optional

from pydantic import BaseModel, Field, field_validator

from .ledger_object import LedgerObject
from .values import normalize_address


# Подстрока полного типа объекта intent на ledger
INTENT_TYPE_MARKER: Final[str] = "::trading_intents::SwapIntent<"


class IntentStatus(str, Enum):
    """Статус intent."""

    OPEN = "open"
    FILLED = "filled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != IntentStatus.OPEN


class InputCommitment(BaseModel):
    """Эскроу входного актива."""

    coin_type: str = Field(..., min_length=1, description="Тип монеты в эскроу")
    amount: int = Field(..., gt=0, lt=2**64, description="Количество в эскроу")

    model_config = {"frozen": True}


class Intent(BaseModel):
    """
    Intent на обмен.

    Immutable модель (frozen=True). version — версия объекта intent на
    ledger в момент наблюдения; именно она является точкой
    compare-and-set для claim_and_fill.
    """

    intent_id: str
    creator: str
    input_commitment: InputCommitment
    output_type: str = Field(..., min_length=1)
    min_output: int = Field(..., ge=0, lt=2**64)
    recipient: str
    deadline_ms: int = Field(..., ge=0)
    status: IntentStatus = IntentStatus.OPEN
    version: int = Field(..., ge=0)
    filled_by: Optional[str] = None
    filled_output: Optional[int] = Field(default=None, ge=0)

    model_config = {"frozen": True}

    @field_validator("intent_id", "creator", "recipient")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)

    def is_expired_at(self, now_ms: int) -> bool:
        """Дедлайн наступил (граница включительно)."""
        return now_ms >= self.deadline_ms

    def effective_status(self, now_ms: int) -> IntentStatus:
        """Статус с учётом пассивного истечения."""
        if self.status == IntentStatus.OPEN and self.is_expired_at(now_ms):
            return IntentStatus.EXPIRED
        return self.status

    def is_fillable_at(self, now_ms: int) -> bool:
        return self.effective_status(now_ms) == IntentStatus.OPEN

    @classmethod
    def from_ledger_object(cls, obj: LedgerObject) -> "Intent":
        """
        Построение Intent из объекта ledger.

        Raises:
            ValueError: объект не является intent
        """
        if INTENT_TYPE_MARKER not in obj.type_tag:
            raise ValueError(f"object {obj.object_id} is not an intent: {obj.type_tag}")
        content = obj.content
        return cls(
            intent_id=obj.object_id,
            creator=content["creator"],
            input_commitment=InputCommitment(
                coin_type=content["coin_type"], amount=content["escrow_amount"]
            ),
            output_type=content["output_type"],
            min_output=content["min_output"],
            recipient=content["recipient"],
            deadline_ms=content["deadline_ms"],
            status=IntentStatus(content["status"]),
            version=obj.version,
            filled_by=content.get("filled_by"),
            filled_output=content.get("filled_output"),
        )
