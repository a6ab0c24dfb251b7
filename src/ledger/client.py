"""
SimulationClient — асинхронный доступ к внешнему ledger

Клиент не реализует транспорт: он работает поверх LedgerBackend
(RPC-обёртка, локальная песочница и т.п.) и отвечает за:
- каноническое кодирование транзакции перед отправкой
- таймауты (asyncio.wait_for) и различие simulate / submit при таймауте
- приведение ответа к Effects (JSON payload проверяется по контракту)
- передачу отказов вызывающему без изменений (без автоматических повторов)

Таймаут simulate безопасен (состояние не меняется) → LedgerTimeout.
Таймаут submit → SubmissionOutcomeUnknown: отправка продолжает
выполняться (asyncio.shield), исход определяет ledger.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Final, List, Optional, Protocol, Set, Tuple, Union

from src.core.config import LedgerClientConfig, TokenTypes
from src.core.domain.effects import Effects
from src.core.domain.ledger_object import LedgerObject
from src.core.domain.transaction import Transaction
from src.core.domain.values import normalize_address
from src.core.errors import (
    ExecutionError,
    LedgerTimeout,
    SimulationError,
    SubmissionOutcomeUnknown,
)
from src.ptb.encoder import encode, transaction_digest

logger = logging.getLogger(__name__)

EffectsPayload = Union[Effects, Dict[str, Any]]

# Размер страницы при обходе монет в get_coins
COIN_PAGE_SIZE: Final[int] = 50


@dataclass(frozen=True)
class ObjectPage:
    """Страница объектов; next_cursor — id последнего объекта (None — конец)."""

    objects: Tuple[LedgerObject, ...]
    next_cursor: Optional[str] = None


class LedgerBackend(Protocol):
    """Интерфейс внешнего ledger, потребляемый клиентом."""

    async def simulate(self, tx_bytes: bytes, sender: str) -> EffectsPayload:
        """Dry run без изменения состояния."""
        ...

    async def submit(self, tx_bytes: bytes, sender: str) -> EffectsPayload:
        """Атомарное исполнение: все эффекты или ни одного."""
        ...

    async def get_object(self, object_id: str) -> Optional[LedgerObject]:
        ...

    async def query_objects(
        self, type_contains: str, cursor: Optional[str], limit: int
    ) -> ObjectPage:
        """Объекты, чей тип содержит подстроку, в порядке id после cursor."""
        ...

    async def query_coins(
        self, owner: str, coin_type: str, cursor: Optional[str], limit: int
    ) -> ObjectPage:
        """Монеты owner точного типа coin_type, в порядке id после cursor."""
        ...


class SimulationClient:
    """
    Клиент ledger.

    Args:
        backend: реализация LedgerBackend
        config: отправитель и таймауты
    """

    def __init__(self, backend: LedgerBackend, config: LedgerClientConfig):
        self.backend = backend
        self.config = config
        self._sender = normalize_address(config.sender)
        # Ссылки на отправки, продолжающиеся после таймаута
        self._in_flight: Set[asyncio.Future] = set()

    @property
    def sender(self) -> str:
        return self._sender

    # -------------------------------------------------------------------------
    # Исполнение
    # -------------------------------------------------------------------------

    async def simulate(self, tx: Transaction, timeout: Optional[float] = None) -> Effects:
        """
        Dry run.

        Raises:
            SimulationError: транзакция была бы отклонена (effects без изменений)
            LedgerTimeout: dry run не уложился в таймаут
        """
        effects = await self._dry_run(tx, timeout)
        return self.ensure_success(effects, SimulationError)

    async def submit(self, tx: Transaction, timeout: Optional[float] = None) -> Effects:
        """
        Исполнение транзакции.

        Raises:
            ExecutionError: ledger отклонил транзакцию (ни один эффект не применён)
            SubmissionOutcomeUnknown: результат не получен в пределах таймаута
        """
        effects = await self._submit(tx, timeout)
        return self.ensure_success(effects)

    async def execute(
        self, tx: Transaction, dry_run: bool = False, timeout: Optional[float] = None
    ) -> Effects:
        """Исполнение или dry run; отказ возвращается как Effects, а не исключение."""
        if dry_run:
            return await self._dry_run(tx, timeout)
        return await self._submit(tx, timeout)

    async def simulate_then_submit(
        self,
        tx: Transaction,
        simulate_timeout: Optional[float] = None,
        submit_timeout: Optional[float] = None,
    ) -> Effects:
        """
        Dry run, затем submit. При отказе dry run транзакция не отправляется.

        Raises:
            SimulationError, LedgerTimeout, ExecutionError, SubmissionOutcomeUnknown
        """
        await self.simulate(tx, simulate_timeout)
        return await self.submit(tx, submit_timeout)

    @staticmethod
    def ensure_success(effects: Effects, error_cls=ExecutionError) -> Effects:
        """
        Проверка успеха.

        Raises:
            error_cls: effects неуспешны (failure передаётся без изменений)
        """
        if not effects.success:
            raise error_cls(effects.error, effects)
        return effects

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------

    async def get_object(
        self, object_id: str, timeout: Optional[float] = None
    ) -> Optional[LedgerObject]:
        if timeout is None:
            timeout = self.config.read_timeout_sec
        try:
            return await asyncio.wait_for(
                self.backend.get_object(normalize_address(object_id)), timeout
            )
        except asyncio.TimeoutError as e:
            raise LedgerTimeout(f"get_object {object_id} exceeded {timeout:.1f}s") from e

    async def query_objects(
        self,
        type_contains: str,
        cursor: Optional[str] = None,
        limit: int = 50,
        timeout: Optional[float] = None,
    ) -> ObjectPage:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if timeout is None:
            timeout = self.config.read_timeout_sec
        try:
            return await asyncio.wait_for(
                self.backend.query_objects(type_contains, cursor, limit), timeout
            )
        except asyncio.TimeoutError as e:
            raise LedgerTimeout(f"query_objects {type_contains!r} exceeded {timeout:.1f}s") from e

    async def get_coins(
        self,
        coin_type: str,
        owner: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[LedgerObject]:
        """
        Все монеты coin_type у owner (по умолчанию — отправитель клиента).

        Страницы запрашиваются последовательно; таймаут действует на весь обход.
        """
        owner = normalize_address(owner) if owner is not None else self._sender
        if timeout is None:
            timeout = self.config.read_timeout_sec
        try:
            return await asyncio.wait_for(self._collect_coins(owner, coin_type), timeout)
        except asyncio.TimeoutError as e:
            raise LedgerTimeout(f"get_coins {coin_type} exceeded {timeout:.1f}s") from e

    async def get_balance(
        self,
        coin_type: str = TokenTypes.sui,
        owner: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Суммарный баланс монет coin_type у owner."""
        coins = await self.get_coins(coin_type, owner=owner, timeout=timeout)
        return sum(coin.content["balance"] for coin in coins)

    # -------------------------------------------------------------------------
    # Внутреннее
    # -------------------------------------------------------------------------

    async def _dry_run(self, tx: Transaction, timeout: Optional[float]) -> Effects:
        if timeout is None:
            timeout = self.config.simulate_timeout_sec
        data = encode(tx)
        digest = transaction_digest(data)
        logger.debug("Simulating %s (%d bytes)", digest[:16], len(data))

        try:
            payload = await asyncio.wait_for(self.backend.simulate(data, self._sender), timeout)
        except asyncio.TimeoutError as e:
            raise LedgerTimeout(f"simulate {digest} exceeded {timeout:.1f}s") from e

        effects = self._to_effects(payload, digest)
        if not effects.success:
            logger.warning("Dry run of %s failed: %s", digest[:16], effects.error)
        return effects

    async def _submit(self, tx: Transaction, timeout: Optional[float]) -> Effects:
        if timeout is None:
            timeout = self.config.submit_timeout_sec
        data = encode(tx)
        digest = transaction_digest(data)
        logger.info("Submitting %s (%d bytes, %d commands)", digest[:16], len(data), len(tx.commands))

        submission = asyncio.ensure_future(self.backend.submit(data, self._sender))
        self._in_flight.add(submission)
        submission.add_done_callback(self._finish_submission)
        try:
            payload = await asyncio.wait_for(asyncio.shield(submission), timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Submission %s still pending after %.1fs; outcome decided by ledger",
                digest[:16],
                timeout,
            )
            raise SubmissionOutcomeUnknown(digest, timeout) from e

        effects = self._to_effects(payload, digest)
        if effects.success:
            logger.info("Transaction %s committed (gas_used=%d)", digest[:16], effects.gas_used)
        else:
            logger.warning("Transaction %s rejected: %s", digest[:16], effects.error)
        return effects

    async def _collect_coins(self, owner: str, coin_type: str) -> List[LedgerObject]:
        coins: List[LedgerObject] = []
        cursor = None
        while True:
            page = await self.backend.query_coins(owner, coin_type, cursor, COIN_PAGE_SIZE)
            coins.extend(page.objects)
            if page.next_cursor is None:
                return coins
            cursor = page.next_cursor

    def _finish_submission(self, submission: asyncio.Future) -> None:
        # Исход отправки, переживший таймаут, иначе никто не прочитает
        self._in_flight.discard(submission)
        if submission.cancelled():
            return
        error = submission.exception()
        if error is not None:
            logger.error("Background submission failed: %r", error)

    @staticmethod
    def _to_effects(payload: EffectsPayload, digest: str) -> Effects:
        effects = payload if isinstance(payload, Effects) else Effects.from_payload(payload)
        if effects.digest is None:
            effects = effects.model_copy(update={"digest": digest})
        return effects
