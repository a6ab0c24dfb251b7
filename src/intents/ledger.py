"""
IntentLedger — создание, чтение и исполнение intents на обмен

Claim-протокол:
1. Исполнитель читает intent (версия v) и строит fill-транзакцию, которая
   ссылается на intent как на изменяемый shared-объект версии v.
2. claim_and_fill сверяет fill-транзакцию с наблюдаемым intent и
   отправляет её ОДИН раз.
3. Ledger исполняет переход OPEN → FILLED атомарно с выплатой; версия
   intent — точка compare-and-set. Проигравший конкурент получает
   object_version_conflict (или abort NOT_OPEN), что отображается в
   ALREADY_CLAIMED.

Исходы гонок — значения (ClaimResult), а не исключения. Ошибки
транспорта (таймауты, неизвестный исход submit) пробрасываются.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Iterable, Optional, Protocol, Sequence, Tuple

from src.core.config import NetworkConfig
from src.core.contracts import validate_intent
from src.core.domain.effects import Effects, ExecutionFailure, FailureKind
from src.core.domain.intent import INTENT_TYPE_MARKER, Intent, IntentStatus
from src.core.domain.ledger_object import LedgerObject
from src.core.domain.transaction import (
    InputRef,
    InvokeEntry,
    ObjectInput,
    ObjectOwnership,
    Transaction,
)
from src.core.domain.values import (
    coin_type_of,
    normalize_address,
    normalize_target,
    short_address,
)
from src.core.errors import ObjectNotFound
from src.intents.state_machine import (
    IntentAbortCode,
    IntentEvent,
    IntentStateMachine,
    IntentTransitionResult,
)
from src.ledger.client import SimulationClient
from src.ptb.builder import CommandGraphBuilder
from src.ptb.protocol import INTENTS_MODULE, ObjectArg, ProtocolCalls

logger = logging.getLogger(__name__)


# =============================================================================
# РЕЗУЛЬТАТЫ
# =============================================================================


class ClaimOutcome(str, Enum):
    """Исход попытки исполнения intent."""

    FILLED = "filled"
    ALREADY_CLAIMED = "already_claimed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    OUTPUT_BELOW_MINIMUM = "output_below_minimum"
    EXECUTION_FAILED = "execution_failed"


@dataclass(frozen=True)
class ClaimResult:
    """Результат claim_and_fill."""

    intent_id: str
    outcome: ClaimOutcome
    effects: Optional[Effects] = None
    failure: Optional[ExecutionFailure] = None
    output_amount: Optional[int] = None
    details: str = ""

    @property
    def filled(self) -> bool:
        return self.outcome == ClaimOutcome.FILLED


@dataclass(frozen=True)
class BatchFillResult:
    """
    Результат batch_fill. Пакет атомарен: либо все intents FILLED, либо
    ни один (claims содержит исход по каждому intent).
    """

    claims: Tuple[ClaimResult, ...]
    effects: Optional[Effects] = None
    failure: Optional[ExecutionFailure] = None

    @property
    def filled(self) -> bool:
        return bool(self.claims) and all(claim.filled for claim in self.claims)


@dataclass(frozen=True)
class IntentFilter:
    """Фильтр списка intents (None — без ограничения)."""

    coin_type: Optional[str] = None
    output_type: Optional[str] = None
    creator: Optional[str] = None
    min_escrow: int = 0

    def matches(self, intent: Intent) -> bool:
        if self.coin_type is not None and intent.input_commitment.coin_type != self.coin_type:
            return False
        if self.output_type is not None and intent.output_type != self.output_type:
            return False
        if self.creator is not None and intent.creator != normalize_address(self.creator):
            return False
        return intent.input_commitment.amount >= self.min_escrow


class Clock(Protocol):
    """Источник времени ledger (ms)."""

    def now_ms(self) -> int:
        ...


class SystemClock:
    """Время процесса (для ledger, синхронизированного с реальным временем)."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


# =============================================================================
# INTENT LEDGER
# =============================================================================


class IntentLedger:
    """
    Intents на ledger.

    Args:
        client: клиент ledger (отправитель — исполнитель / создатель)
        network: конфигурация сети (пакет протокола)
        registry_id: shared-реестр intents
        clock: источник времени ledger
        state_machine: правила переходов (предварительная проверка)
    """

    def __init__(
        self,
        client: SimulationClient,
        network: NetworkConfig,
        registry_id: str,
        clock: Optional[Clock] = None,
        state_machine: Optional[IntentStateMachine] = None,
    ):
        self.client = client
        self.network = network
        self.registry_id = normalize_address(registry_id)
        self.clock = clock or SystemClock()
        self.state_machine = state_machine or IntentStateMachine()

    def _calls(self) -> ProtocolCalls:
        return ProtocolCalls(CommandGraphBuilder(), self.network)

    async def _require_object(self, object_id: str) -> LedgerObject:
        obj = await self.client.get_object(object_id)
        if obj is None:
            raise ObjectNotFound(normalize_address(object_id))
        return obj

    # -------------------------------------------------------------------------
    # Создание и чтение
    # -------------------------------------------------------------------------

    async def create_intent(
        self,
        coin: LedgerObject,
        output_type: str,
        min_output: int,
        deadline_ms: int,
        recipient: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> Intent:
        """
        Эскроу монеты в новом intent.

        Args:
            coin: монета отправителя
            amount: размер эскроу (None — монета целиком)
            recipient: получатель выхода (None — отправитель)

        Returns:
            созданный intent в состоянии OPEN

        Raises:
            ValueError: coin не является монетой
            BuildError: некорректные аргументы транзакции
            ExecutionError: ledger отклонил создание
        """
        coin_type = coin_type_of(coin.type_tag)
        if coin_type is None:
            raise ValueError(f"object {coin.object_id} is not a coin: {coin.type_tag}")

        registry = await self._require_object(self.registry_id)
        calls = self._calls()
        escrow = calls.object_arg(coin)
        if amount is not None:
            (escrow,) = calls.builder.split_coins(escrow, [amount])
        calls.create_swap_intent(
            coin_type,
            output_type,
            registry,
            escrow,
            min_output,
            recipient or self.client.sender,
            deadline_ms,
        )

        effects = await self.client.submit(calls.builder.build())
        (created,) = effects.created_objects(INTENT_TYPE_MARKER)
        intent = await self.get_intent(created.object_id)
        logger.info(
            "Intent %s created: %d %s for ≥%d %s until %d",
            short_address(intent.intent_id),
            intent.input_commitment.amount,
            coin_type,
            intent.min_output,
            output_type,
            deadline_ms,
        )
        return intent

    async def get_intent(self, intent_id: str) -> Intent:
        """
        Текущее состояние intent.

        Raises:
            ObjectNotFound: объекта нет на ledger
            ValueError: объект не является intent
        """
        intent = Intent.from_ledger_object(await self._require_object(intent_id))
        validate_intent(intent.model_dump(mode="json"))
        return intent

    async def list_open_intents(
        self,
        intent_filter: Optional[IntentFilter] = None,
        page_size: int = 50,
        cursor: Optional[str] = None,
    ) -> AsyncIterator[Intent]:
        """
        Ленивый перебор intents, наблюдаемых как OPEN (истёкшие пропускаются).

        Перебор идёт страницами в порядке id; для продолжения с места
        остановки передайте id последнего полученного intent как cursor.
        """
        while True:
            page = await self.client.query_objects(INTENT_TYPE_MARKER, cursor, page_size)
            now_ms = self.clock.now_ms()
            for obj in page.objects:
                intent = Intent.from_ledger_object(obj)
                if not intent.is_fillable_at(now_ms):
                    continue
                if intent_filter is None or intent_filter.matches(intent):
                    yield intent
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    # -------------------------------------------------------------------------
    # Fill
    # -------------------------------------------------------------------------

    def _intent_input(self, intent: Intent) -> ObjectInput:
        return ObjectInput(
            object_id=intent.intent_id,
            version=intent.version,
            ownership=ObjectOwnership.SHARED,
            mutable=True,
        )

    def build_fill_transaction(
        self, intent: Intent, pool: ObjectArg, deep_coin: ObjectArg
    ) -> Transaction:
        """Fill-транзакция для наблюдаемой версии intent."""
        return self.build_batch_fill_transaction([intent], pool, deep_coin)

    def build_batch_fill_transaction(
        self, intents: Sequence[Intent], pool: ObjectArg, deep_coin: ObjectArg
    ) -> Transaction:
        """Одна транзакция, исполняющая все intents через один пул."""
        if not intents:
            raise ValueError("at least one intent is required")
        calls = self._calls()
        for intent in intents:
            calls.execute_intent_swap(
                intent.input_commitment.coin_type,
                intent.output_type,
                self._intent_input(intent),
                pool,
                deep_coin,
            )
        return calls.builder.build()

    def filled_intent_ids(self, fill_tx: Transaction) -> Tuple[str, ...]:
        """Intents, которые исполняет fill_tx (первый аргумент execute_intent_swap)."""
        target = normalize_target(self.network.target(INTENTS_MODULE, "execute_intent_swap"))
        filled = []
        for command in fill_tx.commands:
            if not isinstance(command, InvokeEntry) or command.target != target:
                continue
            first = command.arguments[0] if command.arguments else None
            if not isinstance(first, InputRef) or first.index >= len(fill_tx.inputs):
                raise ValueError("execute_intent_swap must take the intent as a direct input")
            item = fill_tx.inputs[first.index]
            if not isinstance(item, ObjectInput):
                raise ValueError("execute_intent_swap must take the intent as an object input")
            filled.append(item.object_id)
        return tuple(filled)

    async def _filled_claim(self, intent_id: str, effects: Effects) -> ClaimResult:
        # Выход каждого intent записан в нём самом; изменение баланса
        # получателя в пакете общее для всех его intents
        filled = await self.get_intent(intent_id)
        return ClaimResult(
            filled.intent_id,
            ClaimOutcome.FILLED,
            effects=effects,
            output_amount=filled.filled_output,
        )

    def _precheck(self, intent: Intent, fill_tx: Transaction, now_ms: int) -> Optional[ClaimResult]:
        """Исход без отправки (None — можно отправлять)."""
        status = intent.effective_status(now_ms)
        if status != IntentStatus.OPEN:
            outcome = {
                IntentStatus.FILLED: ClaimOutcome.ALREADY_CLAIMED,
                IntentStatus.EXPIRED: ClaimOutcome.EXPIRED,
                IntentStatus.CANCELLED: ClaimOutcome.CANCELLED,
            }[status]
            return ClaimResult(intent.intent_id, outcome, details=f"intent is {status.value}")

        referenced = fill_tx.find_object_input(intent.intent_id)
        if referenced is None:
            raise ValueError(f"fill transaction does not reference intent {intent.intent_id}")
        if referenced.version != intent.version:
            return ClaimResult(
                intent.intent_id,
                ClaimOutcome.ALREADY_CLAIMED,
                details=f"fill built for version {referenced.version}, "
                f"intent is at version {intent.version}",
            )
        return None

    async def claim_and_fill(self, intent_id: str, fill_tx: Transaction) -> ClaimResult:
        """
        Исполнение intent fill-транзакцией.

        Выход проверяет ledger при исполнении fill_tx, а не вызывающий.
        Ровно один из конкурирующих claim получает FILLED.

        Raises:
            ObjectNotFound: intent отсутствует
            ValueError: fill_tx не ссылается на intent
            LedgerTimeout, SubmissionOutcomeUnknown: исход неизвестен
        """
        intent = await self.get_intent(intent_id)
        early = self._precheck(intent, fill_tx, self.clock.now_ms())
        if early is not None:
            self._log_claim(early)
            return early

        effects = await self.client.execute(fill_tx)
        if effects.success:
            claim = await self._filled_claim(intent.intent_id, effects)
        else:
            claim = ClaimResult(
                intent.intent_id,
                claim_outcome_for(effects.error, intent.intent_id),
                effects=effects,
                failure=effects.error,
                details=str(effects.error),
            )
        self._log_claim(claim)
        return claim

    async def batch_fill(self, intent_ids: Iterable[str], fill_tx: Transaction) -> BatchFillResult:
        """
        Атомарное исполнение нескольких intents одной транзакцией.

        Если хотя бы один intent не может быть исполнен, ни один не
        исполняется.

        Raises:
            ValueError: пустой пакет, повторы, или fill_tx исполняет не
                ровно перечисленные intents
        """
        intent_ids = [normalize_address(intent_id) for intent_id in intent_ids]
        if not intent_ids:
            raise ValueError("at least one intent is required")
        if len(set(intent_ids)) != len(intent_ids):
            raise ValueError("duplicate intent ids in batch")
        filled_ids = self.filled_intent_ids(fill_tx)
        if set(filled_ids) != set(intent_ids) or len(filled_ids) != len(intent_ids):
            raise ValueError(
                f"fill transaction executes {len(filled_ids)} intent(s) "
                f"that do not match the {len(intent_ids)} listed"
            )

        intents = [await self.get_intent(intent_id) for intent_id in intent_ids]
        now_ms = self.clock.now_ms()
        early = {intent.intent_id: self._precheck(intent, fill_tx, now_ms) for intent in intents}

        if any(result is not None for result in early.values()):
            claims = tuple(
                early[intent.intent_id]
                or ClaimResult(
                    intent.intent_id,
                    ClaimOutcome.EXECUTION_FAILED,
                    details="batch not submitted: another intent cannot be filled",
                )
                for intent in intents
            )
            logger.warning("Batch of %d intent(s) not submitted", len(intents))
            return BatchFillResult(claims=claims)

        effects = await self.client.execute(fill_tx)
        if effects.success:
            claims = tuple(
                [await self._filled_claim(intent_id, effects) for intent_id in intent_ids]
            )
            logger.info("Batch of %d intent(s) filled", len(intents))
            return BatchFillResult(claims=claims, effects=effects)

        failure = effects.error
        claims = tuple(
            ClaimResult(
                intent.intent_id,
                claim_outcome_for(failure, intent.intent_id)
                if failure.object_id in (None, intent.intent_id)
                else ClaimOutcome.EXECUTION_FAILED,
                effects=effects,
                failure=failure,
                details=str(failure),
            )
            for intent in intents
        )
        logger.warning("Batch of %d intent(s) rejected: %s", len(intents), failure)
        return BatchFillResult(claims=claims, effects=effects, failure=failure)

    # -------------------------------------------------------------------------
    # Cancel / reclaim
    # -------------------------------------------------------------------------

    async def cancel(self, intent_id: str) -> IntentTransitionResult:
        """
        Отмена intent создателем (эскроу возвращается создателю).

        Отказ по правилам перехода возвращается без отправки транзакции.

        Raises:
            ExecutionError: ledger отклонил отмену
        """
        return await self._close(intent_id, IntentEvent.CANCEL, "cancel_intent")

    async def reclaim_expired(self, intent_id: str) -> IntentTransitionResult:
        """Возврат эскроу создателю после дедлайна."""
        return await self._close(intent_id, IntentEvent.EXPIRE, "reclaim_expired")

    async def _close(
        self, intent_id: str, event: IntentEvent, function: str
    ) -> IntentTransitionResult:
        intent = await self.get_intent(intent_id)
        result = self.state_machine.evaluate(
            intent, event, now_ms=self.clock.now_ms(), actor=self.client.sender
        )
        if not result.transition_occurred:
            logger.warning(
                "Intent %s %s rejected: %s (%s)",
                short_address(intent.intent_id),
                event.value,
                result.transition_reason,
                result.details,
            )
            return result

        calls = self._calls()
        getattr(calls, function)(
            intent.input_commitment.coin_type, intent.output_type, self._intent_input(intent)
        )
        await self.client.submit(calls.builder.build())
        logger.info(
            "Intent %s %s → %s",
            short_address(intent.intent_id),
            result.previous_status.value,
            result.new_status.value,
        )
        return result

    def _log_claim(self, claim: ClaimResult) -> None:
        if claim.filled:
            logger.info(
                "Intent %s filled (output=%s)", short_address(claim.intent_id), claim.output_amount
            )
        elif claim.outcome == ClaimOutcome.ALREADY_CLAIMED:
            logger.warning("Lost race for intent %s: %s", short_address(claim.intent_id), claim.details)
        else:
            logger.warning(
                "Claim of intent %s ended as %s: %s",
                short_address(claim.intent_id),
                claim.outcome.value,
                claim.details,
            )


# =============================================================================
# ОТОБРАЖЕНИЕ ОТКАЗОВ
# =============================================================================

_ABORT_OUTCOMES = {
    IntentAbortCode.NOT_OPEN: ClaimOutcome.ALREADY_CLAIMED,
    IntentAbortCode.EXPIRED: ClaimOutcome.EXPIRED,
    IntentAbortCode.OUTPUT_BELOW_MINIMUM: ClaimOutcome.OUTPUT_BELOW_MINIMUM,
}


def claim_outcome_for(failure: ExecutionFailure, intent_id: str) -> ClaimOutcome:
    """
    Исход claim по отказу ledger.

    Конфликт версии самого intent и abort NOT_OPEN означают, что intent уже
    исполнен конкурентом.
    """
    if failure.kind == FailureKind.OBJECT_VERSION_CONFLICT:
        if failure.object_id == normalize_address(intent_id):
            return ClaimOutcome.ALREADY_CLAIMED
        return ClaimOutcome.EXECUTION_FAILED

    if (
        failure.kind == FailureKind.MOVE_ABORT
        and failure.location is not None
        and failure.location.endswith(f"::{INTENTS_MODULE}")
        and failure.abort_code in _ABORT_OUTCOMES
    ):
        return _ABORT_OUTCOMES[IntentAbortCode(failure.abort_code)]

    return ClaimOutcome.EXECUTION_FAILED
