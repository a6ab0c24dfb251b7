"""Intent State Machine — переходы жизненного цикла intent.

Переходы:
- OPEN → FILLED: fill, только пока now < deadline и выход ≥ min_output
- OPEN → CANCELLED: cancel, только создателем и только пока intent не истёк
- OPEN → EXPIRED: expire (reclaim эскроу), только при now ≥ deadline

Терминальные состояния не меняются. State machine чистая: не выполняет
I/O и не хранит состояние. Её используют и ledger-модуль intents (как
правило исполнения), и IntentLedger (как предварительная проверка).
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

from src.core.domain.intent import Intent, IntentStatus
from src.core.domain.values import normalize_address


class IntentEvent(str, Enum):
    """Событие жизненного цикла intent."""

    FILL = "fill"
    CANCEL = "cancel"
    EXPIRE = "expire"


class IntentAbortCode(IntEnum):
    """Коды abort модуля trading_intents."""

    NOT_OPEN = 10
    EXPIRED = 11
    OUTPUT_BELOW_MINIMUM = 12
    NOT_CREATOR = 13
    NOT_EXPIRED = 14
    INVALID_DEADLINE = 15
    ZERO_ESCROW = 16


@dataclass(frozen=True)
class IntentTransitionResult:
    """Результат оценки перехода intent."""

    new_status: IntentStatus
    previous_status: IntentStatus

    # Диагностика
    transition_occurred: bool
    transition_reason: str
    abort_code: Optional[IntentAbortCode]

    # Для отладки
    details: str


class IntentStateMachine:
    """State machine intent: OPEN → FILLED / CANCELLED / EXPIRED."""

    def evaluate(
        self,
        intent: Intent,
        event: IntentEvent,
        now_ms: int,
        actor: str,
        output_amount: Optional[int] = None,
    ) -> IntentTransitionResult:
        """Оценка перехода.

        Args:
            intent: intent в наблюдаемом состоянии
            event: событие
            now_ms: текущее время ledger (ms)
            actor: адрес инициатора
            output_amount: выход исполнения (обязателен для FILL)

        Returns:
            IntentTransitionResult; при отказе transition_occurred=False и
            abort_code указывает причину

        Raises:
            ValueError: FILL без output_amount
        """
        status = intent.status

        if status != IntentStatus.OPEN:
            return self._reject(
                status,
                f"intent_not_open_{status.value}",
                IntentAbortCode.NOT_OPEN,
                f"Intent {intent.intent_id} is {status.value}",
            )

        if event == IntentEvent.FILL:
            return self._evaluate_fill(intent, now_ms, actor, output_amount)
        if event == IntentEvent.CANCEL:
            return self._evaluate_cancel(intent, now_ms, actor)
        if event == IntentEvent.EXPIRE:
            return self._evaluate_expire(intent, now_ms)
        raise ValueError(f"unknown intent event: {event}")

    def _evaluate_fill(
        self, intent: Intent, now_ms: int, actor: str, output_amount: Optional[int]
    ) -> IntentTransitionResult:
        if output_amount is None:
            raise ValueError("output_amount is required for fill")

        if intent.is_expired_at(now_ms):
            return self._reject(
                IntentStatus.OPEN,
                "fill_after_deadline",
                IntentAbortCode.EXPIRED,
                f"now={now_ms} ≥ deadline={intent.deadline_ms}",
            )

        if output_amount < intent.min_output:
            return self._reject(
                IntentStatus.OPEN,
                "output_below_minimum",
                IntentAbortCode.OUTPUT_BELOW_MINIMUM,
                f"output={output_amount} < min_output={intent.min_output}",
            )

        return self._create_result(
            new_status=IntentStatus.FILLED,
            previous_status=IntentStatus.OPEN,
            transition_occurred=True,
            transition_reason="filled",
            abort_code=None,
            details=f"Filled by {normalize_address(actor)} with output={output_amount}",
        )

    def _evaluate_cancel(self, intent: Intent, now_ms: int, actor: str) -> IntentTransitionResult:
        if normalize_address(actor) != intent.creator:
            return self._reject(
                IntentStatus.OPEN,
                "cancel_by_non_creator",
                IntentAbortCode.NOT_CREATOR,
                f"actor={normalize_address(actor)} creator={intent.creator}",
            )

        # Истёкший intent наблюдается как EXPIRED: эскроу возвращает reclaim
        if intent.is_expired_at(now_ms):
            return self._reject(
                IntentStatus.OPEN,
                "cancel_after_deadline",
                IntentAbortCode.EXPIRED,
                f"now={now_ms} ≥ deadline={intent.deadline_ms}",
            )

        return self._create_result(
            new_status=IntentStatus.CANCELLED,
            previous_status=IntentStatus.OPEN,
            transition_occurred=True,
            transition_reason="cancelled_by_creator",
            abort_code=None,
            details=f"Escrow {intent.input_commitment.amount} returned to creator",
        )

    def _evaluate_expire(self, intent: Intent, now_ms: int) -> IntentTransitionResult:
        if not intent.is_expired_at(now_ms):
            return self._reject(
                IntentStatus.OPEN,
                "deadline_not_reached",
                IntentAbortCode.NOT_EXPIRED,
                f"now={now_ms} < deadline={intent.deadline_ms}",
            )

        return self._create_result(
            new_status=IntentStatus.EXPIRED,
            previous_status=IntentStatus.OPEN,
            transition_occurred=True,
            transition_reason="expired_reclaimed",
            abort_code=None,
            details=f"Escrow {intent.input_commitment.amount} reclaimed by creator",
        )

    def _reject(
        self, status: IntentStatus, reason: str, code: IntentAbortCode, details: str
    ) -> IntentTransitionResult:
        return self._create_result(
            new_status=status,
            previous_status=status,
            transition_occurred=False,
            transition_reason=reason,
            abort_code=code,
            details=details,
        )

    def _create_result(
        self,
        new_status: IntentStatus,
        previous_status: IntentStatus,
        transition_occurred: bool,
        transition_reason: str,
        abort_code: Optional[IntentAbortCode],
        details: str,
    ) -> IntentTransitionResult:
        """Создание результата перехода."""
        return IntentTransitionResult(
            new_status=new_status,
            previous_status=previous_status,
            transition_occurred=transition_occurred,
            transition_reason=transition_reason,
            abort_code=abort_code,
            details=details,
        )
