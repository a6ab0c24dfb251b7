"""
SandboxLedger — локальный ledger в памяти (реализация LedgerBackend)

Исполняет канонические байты транзакции с семантикой реального ledger:
- декодирование с проверкой графа (MalformedTransaction → invalid_transaction)
- проверка объектных inputs: существование, владение отправителем,
  ожидаемая версия (устаревшая версия → object_version_conflict; это
  compare-and-set, на котором держится claim intent)
- исполнение команд на рабочей копии состояния; фиксация только при
  успехе всех команд, dry run не фиксирует никогда
- версии: все изменяемые inputs и созданные объекты получают
  lamport-версию max(версий inputs) + 1
- изменения балансов — разность сумм монет по (владелец, тип монеты)

Entry-функции — Python callables, зарегистрированные по target
(встроенные модули протокола — src.ledger.modules).
"""

import asyncio
import copy
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Final, List, NoReturn, Optional, Sequence, Set, Tuple

from src.core.config import CLOCK_OBJECT_ID
from src.core.domain.effects import (
    BalanceChange,
    CommandOutput,
    Effects,
    ExecutionFailure,
    FailureKind,
    ObjectChange,
    ObjectChangeType,
)
from src.core.domain.ledger_object import OWNER_IMMUTABLE, OWNER_SHARED, LedgerObject
from src.core.domain.transaction import (
    InputRef,
    InvokeEntry,
    MakeMoveVec,
    MergeCoins,
    ObjectInput,
    ObjectOwnership,
    PureInput,
    Reference,
    SplitCoins,
    Transaction,
    TransferObjects,
)
from src.core.domain.values import (
    coin_type_of,
    coin_type_tag,
    normalize_address,
    normalize_target,
    short_address,
    split_target,
)
from src.core.errors import MalformedTransaction
from src.ledger.client import ObjectPage
from src.ptb.encoder import decode, transaction_digest
from src.ptb.signatures import EntrySignature, SignatureRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# КОНСТАНТЫ
# =============================================================================

# Условная стоимость исполнения команды (газ не списывается)
GAS_PER_COMMAND: Final[int] = 1_000

CLOCK_TYPE: Final[str] = "0x2::clock::Clock"

# Первый id объектов, создаваемых вне транзакций
_SETUP_ID_BASE: Final[int] = 0x1000


# =============================================================================
# ОТКАЗЫ ИСПОЛНЕНИЯ
# =============================================================================


class ExecutionAbort(Exception):
    """Отказ исполнения транзакции в песочнице."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        abort_code: Optional[int] = None,
        location: Optional[str] = None,
        object_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.abort_code = abort_code
        self.location = location
        self.object_id = object_id

    def to_failure(self, command_index: Optional[int]) -> ExecutionFailure:
        return ExecutionFailure(
            kind=self.kind,
            message=self.message,
            command_index=command_index,
            abort_code=self.abort_code,
            location=self.location,
            object_id=self.object_id,
        )


class MoveAbort(ExecutionAbort):
    """Abort entry-функции с кодом."""

    def __init__(
        self,
        code: int,
        message: str = "",
        location: Optional[str] = None,
        object_id: Optional[str] = None,
    ):
        super().__init__(
            FailureKind.MOVE_ABORT,
            message or f"abort code {code}",
            abort_code=int(code),
            location=location,
            object_id=object_id,
        )


# =============================================================================
# ХРАНИЛИЩЕ
# =============================================================================


@dataclass
class StoredObject:
    """Объект в хранилище песочницы. owner=None — объект "в руках" транзакции."""

    object_id: str
    version: int
    type_tag: str
    owner: Optional[str]
    content: Dict[str, Any] = field(default_factory=dict)

    @property
    def coin_type(self) -> Optional[str]:
        return coin_type_of(self.type_tag)

    def snapshot(self) -> LedgerObject:
        return LedgerObject(
            object_id=self.object_id,
            version=self.version,
            type_tag=self.type_tag,
            owner=self.owner or OWNER_IMMUTABLE,
            content=copy.deepcopy(self.content),
        )


# =============================================================================
# КОНТЕКСТ ИСПОЛНЕНИЯ
# =============================================================================


class ExecutionContext:
    """
    Рабочее состояние одной транзакции, доступное entry-функциям.

    Все изменения выполняются над рабочей копией хранилища.
    """

    def __init__(self, objects: Dict[str, StoredObject], sender: str, digest: str, now_ms: int):
        self.objects = objects
        self.sender = sender
        self.digest = digest
        self.now_ms = now_ms
        self.command_index: Optional[int] = None
        self.location: Optional[str] = None
        self.type_arguments: Tuple[str, ...] = ()
        self.package: Optional[str] = None
        self._frozen: Set[str] = set()
        self._created = 0

    # --- объекты ---

    def freeze(self, object_id: str) -> None:
        """Объект доступен транзакции только на чтение."""
        self._frozen.add(object_id)

    def get(self, object_id: str) -> StoredObject:
        obj = self.objects.get(object_id)
        if obj is None:
            raise ExecutionAbort(
                FailureKind.OBJECT_NOT_FOUND,
                f"object {short_address(object_id)} does not exist",
                object_id=object_id,
            )
        return obj

    def borrow_mut(self, object_id: str) -> StoredObject:
        if object_id in self._frozen:
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"object {short_address(object_id)} is passed read-only",
                object_id=object_id,
            )
        return self.get(object_id)

    def new_object_id(self) -> str:
        self._created += 1
        seed = f"{self.digest}:{self.sender}:{self._created}".encode()
        return "0x" + hashlib.blake2b(seed, digest_size=32).hexdigest()

    def create(self, type_tag: str, content: Dict[str, Any], owner: Optional[str] = None) -> str:
        object_id = self.new_object_id()
        self.objects[object_id] = StoredObject(
            object_id=object_id, version=0, type_tag=type_tag, owner=owner, content=content
        )
        return object_id

    def delete(self, object_id: str) -> StoredObject:
        obj = self.borrow_mut(object_id)
        del self.objects[object_id]
        return obj

    def transfer(self, object_id: str, recipient: str) -> None:
        obj = self.borrow_mut(object_id)
        if obj.owner in (OWNER_SHARED, OWNER_IMMUTABLE):
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"object {short_address(object_id)} is {obj.owner} and cannot be transferred",
                object_id=object_id,
            )
        obj.owner = normalize_address(recipient)

    def share(self, object_id: str) -> None:
        self.borrow_mut(object_id).owner = OWNER_SHARED

    # --- монеты ---

    def coin_type(self, coin_id: str) -> str:
        coin_type = self.get(coin_id).coin_type
        if coin_type is None:
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"object {short_address(coin_id)} is not a coin",
                object_id=coin_id,
            )
        return coin_type

    def balance(self, coin_id: str) -> int:
        self.coin_type(coin_id)
        return self.get(coin_id).content["balance"]

    def mint(self, coin_type: str, amount: int, owner: Optional[str] = None) -> str:
        return self.create(coin_type_tag(coin_type), {"balance": amount}, owner)

    def split(self, coin_id: str, amount: int) -> str:
        coin_type = self.coin_type(coin_id)
        coin = self.borrow_mut(coin_id)
        if amount > coin.content["balance"]:
            raise ExecutionAbort(
                FailureKind.INSUFFICIENT_BALANCE,
                f"coin {short_address(coin_id)} holds {coin.content['balance']}, "
                f"{amount} requested",
                object_id=coin_id,
            )
        coin.content["balance"] -= amount
        return self.mint(coin_type, amount)

    def join(self, destination_id: str, source_id: str) -> None:
        if destination_id == source_id:
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"coin {short_address(source_id)} cannot be merged into itself",
                object_id=source_id,
            )
        if self.coin_type(destination_id) != self.coin_type(source_id):
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                "cannot merge coins of different types",
                object_id=source_id,
            )
        amount = self.burn(source_id)
        self.borrow_mut(destination_id).content["balance"] += amount

    def burn(self, coin_id: str) -> int:
        """Удаление монеты; возвращает её баланс."""
        self.coin_type(coin_id)
        return self.delete(coin_id).content["balance"]

    # --- abort ---

    def abort(self, code: int, message: str = "", object_id: Optional[str] = None) -> NoReturn:
        raise MoveAbort(code, message, location=self.location, object_id=object_id)


EntryFunction = Callable[[ExecutionContext, List[Any]], Sequence[Any]]


# =============================================================================
# SANDBOX LEDGER
# =============================================================================


class SandboxLedger:
    """
    Ledger в памяти процесса.

    Args:
        now_ms: начальное время часов
        latency_sec: задержка перед исполнением submit / simulate
    """

    def __init__(self, now_ms: int = 0, latency_sec: float = 0.0):
        self.signatures = SignatureRegistry()
        self.latency_sec = latency_sec
        self._functions: Dict[str, EntryFunction] = {}
        self._objects: Dict[str, StoredObject] = {}
        self._executed: Set[Tuple[str, str]] = set()
        self._setup_seq = 0
        self._now_ms = now_ms

        clock_id = normalize_address(CLOCK_OBJECT_ID)
        self._objects[clock_id] = StoredObject(
            object_id=clock_id,
            version=1,
            type_tag=CLOCK_TYPE,
            owner=OWNER_SHARED,
            content={"timestamp_ms": now_ms},
        )

    # -------------------------------------------------------------------------
    # Настройка
    # -------------------------------------------------------------------------

    def register(
        self, target: str, function: EntryFunction, signature: Optional[EntrySignature] = None
    ) -> None:
        """Регистрация entry-функции (и её сигнатуры для проверки при декодировании)."""
        self._functions[normalize_target(target)] = function
        if signature is not None:
            self.signatures.register(signature)

    def now_ms(self) -> int:
        return self._now_ms

    def set_time_ms(self, now_ms: int) -> None:
        self._now_ms = now_ms
        self._objects[normalize_address(CLOCK_OBJECT_ID)].content["timestamp_ms"] = now_ms

    def advance_time_ms(self, delta_ms: int) -> None:
        self.set_time_ms(self._now_ms + delta_ms)

    def create_object(
        self, type_tag: str, content: Dict[str, Any], owner: str
    ) -> LedgerObject:
        """Создание объекта вне транзакции (начальное состояние)."""
        self._setup_seq += 1
        object_id = normalize_address(hex(_SETUP_ID_BASE + self._setup_seq))
        if owner not in (OWNER_SHARED, OWNER_IMMUTABLE):
            owner = normalize_address(owner)
        self._objects[object_id] = StoredObject(
            object_id=object_id,
            version=1,
            type_tag=type_tag,
            owner=owner,
            content=copy.deepcopy(content),
        )
        return self._objects[object_id].snapshot()

    def create_shared_object(self, type_tag: str, content: Dict[str, Any]) -> LedgerObject:
        return self.create_object(type_tag, content, OWNER_SHARED)

    def mint_coin(self, owner: str, coin_type: str, amount: int) -> LedgerObject:
        if amount < 0:
            raise ValueError(f"amount must be non-negative, got {amount}")
        return self.create_object(coin_type_tag(coin_type), {"balance": amount}, owner)

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------

    def get(self, object_id: str) -> Optional[LedgerObject]:
        obj = self._objects.get(normalize_address(object_id))
        return obj.snapshot() if obj is not None else None

    def coins_of(self, owner: str, coin_type: str) -> List[LedgerObject]:
        owner = normalize_address(owner)
        return [
            obj.snapshot()
            for obj in self._objects.values()
            if obj.owner == owner and obj.coin_type == coin_type
        ]

    def balance_of(self, owner: str, coin_type: str) -> int:
        return sum(coin.content["balance"] for coin in self.coins_of(owner, coin_type))

    # -------------------------------------------------------------------------
    # LedgerBackend
    # -------------------------------------------------------------------------

    async def simulate(self, tx_bytes: bytes, sender: str) -> Effects:
        await asyncio.sleep(self.latency_sec)
        return self._execute(tx_bytes, sender, commit=False)

    async def submit(self, tx_bytes: bytes, sender: str) -> Effects:
        await asyncio.sleep(self.latency_sec)
        return self._execute(tx_bytes, sender, commit=True)

    async def get_object(self, object_id: str) -> Optional[LedgerObject]:
        return self.get(object_id)

    async def query_objects(
        self, type_contains: str, cursor: Optional[str], limit: int
    ) -> ObjectPage:
        return self._page(lambda obj: type_contains in obj.type_tag, cursor, limit)

    async def query_coins(
        self, owner: str, coin_type: str, cursor: Optional[str], limit: int
    ) -> ObjectPage:
        owner = normalize_address(owner)
        return self._page(
            lambda obj: obj.owner == owner and obj.coin_type == coin_type, cursor, limit
        )

    def _page(
        self, predicate: Callable[[StoredObject], bool], cursor: Optional[str], limit: int
    ) -> ObjectPage:
        after = normalize_address(cursor) if cursor is not None else None
        matches = sorted(
            (
                obj
                for obj in self._objects.values()
                if predicate(obj) and (after is None or obj.object_id > after)
            ),
            key=lambda obj: obj.object_id,
        )
        page = matches[:limit]
        next_cursor = page[-1].object_id if len(matches) > limit else None
        return ObjectPage(objects=tuple(obj.snapshot() for obj in page), next_cursor=next_cursor)

    # -------------------------------------------------------------------------
    # Исполнение
    # -------------------------------------------------------------------------

    def _execute(self, tx_bytes: bytes, sender: str, commit: bool) -> Effects:
        digest = transaction_digest(bytes(tx_bytes))
        sender = normalize_address(sender)

        try:
            tx = decode(tx_bytes, self.signatures)
        except MalformedTransaction as e:
            failure = ExecutionFailure(kind=FailureKind.INVALID_TRANSACTION, message=str(e))
            logger.warning("Rejected malformed transaction %s: %s", digest[:16], e)
            return Effects.failure(failure, digest=digest)

        gas_used = GAS_PER_COMMAND * len(tx.commands)
        working = copy.deepcopy(self._objects)
        context = ExecutionContext(working, sender, digest, self._now_ms)

        try:
            values, mutable_ids, lamport = self._load_inputs(tx, context)
            if commit and (digest, sender) in self._executed:
                raise ExecutionAbort(
                    FailureKind.INVALID_TRANSACTION, f"transaction {digest} already executed"
                )
            outputs = self._run_commands(tx, context, values)
            context.command_index = None
            self._settle_loose_objects(context)
        except ExecutionAbort as abort:
            failure = abort.to_failure(context.command_index)
            logger.info(
                "%s of %s aborted: %s", "Submit" if commit else "Dry run", digest[:16], failure
            )
            return Effects.failure(failure, digest=digest, gas_used=gas_used)

        object_changes = self._object_changes(working, mutable_ids, lamport)
        balance_changes = self._balance_changes(working)
        effects = Effects(
            success=True,
            digest=digest,
            gas_used=gas_used,
            command_outputs=tuple(outputs),
            balance_changes=tuple(balance_changes),
            object_changes=tuple(object_changes),
        )

        if commit:
            self._objects = working
            self._executed.add((digest, sender))
            logger.info(
                "Committed %s: %d object change(s), %d balance change(s)",
                digest[:16],
                len(object_changes),
                len(balance_changes),
            )
        return effects

    def _load_inputs(
        self, tx: Transaction, context: ExecutionContext
    ) -> Tuple[List[Any], Set[str], int]:
        """Значения inputs, изменяемые объекты и lamport-версия транзакции."""
        values: List[Any] = []
        seen: Set[str] = set()
        mutable_ids: Set[str] = set()
        max_version = 0

        for item in tx.inputs:
            if isinstance(item, PureInput):
                values.append(item.value)
                continue

            if item.object_id in seen:
                raise ExecutionAbort(
                    FailureKind.INVALID_TRANSACTION,
                    f"object {short_address(item.object_id)} passed more than once",
                    object_id=item.object_id,
                )
            obj = context.get(item.object_id)
            max_version = max(max_version, obj.version)

            if item.ownership == ObjectOwnership.SHARED:
                if obj.owner != OWNER_SHARED:
                    raise ExecutionAbort(
                        FailureKind.INVALID_TRANSACTION,
                        f"object {short_address(item.object_id)} is not shared",
                        object_id=item.object_id,
                    )
                if item.mutable:
                    self._check_version(item, obj)
                    mutable_ids.add(item.object_id)
                else:
                    context.freeze(item.object_id)
            else:
                self._check_owned(item, obj, context.sender)
                self._check_version(item, obj)
                if obj.owner == OWNER_IMMUTABLE:
                    context.freeze(item.object_id)
                else:
                    mutable_ids.add(item.object_id)

            seen.add(item.object_id)
            values.append(item.object_id)

        return values, mutable_ids, max_version + 1

    @staticmethod
    def _check_owned(item: ObjectInput, obj: StoredObject, sender: str) -> None:
        if obj.owner == OWNER_SHARED:
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"shared object {short_address(item.object_id)} passed as owned",
                object_id=item.object_id,
            )
        if (
            item.ownership == ObjectOwnership.OWNED
            and obj.owner != OWNER_IMMUTABLE
            and obj.owner != sender
        ):
            raise ExecutionAbort(
                FailureKind.OBJECT_NOT_OWNED,
                f"object {short_address(item.object_id)} is owned by {obj.owner}",
                object_id=item.object_id,
            )

    @staticmethod
    def _check_version(item: ObjectInput, obj: StoredObject) -> None:
        if obj.version != item.version:
            raise ExecutionAbort(
                FailureKind.OBJECT_VERSION_CONFLICT,
                f"object {short_address(item.object_id)} is at version {obj.version}, "
                f"transaction expects {item.version}",
                object_id=item.object_id,
            )

    def _run_commands(
        self, tx: Transaction, context: ExecutionContext, inputs: List[Any]
    ) -> List[CommandOutput]:
        results: List[Tuple[Any, ...]] = []
        outputs: List[CommandOutput] = []

        def value(ref: Reference) -> Any:
            if isinstance(ref, InputRef):
                return inputs[ref.index]
            return results[ref.command_index][ref.slot]

        for command_index, command in enumerate(tx.commands):
            context.command_index = command_index
            context.location = None

            if isinstance(command, SplitCoins):
                source = value(command.source)
                produced = tuple(context.split(source, value(amount)) for amount in command.amounts)
            elif isinstance(command, MergeCoins):
                destination = value(command.destination)
                for source in command.sources:
                    context.join(destination, value(source))
                produced = ()
            elif isinstance(command, TransferObjects):
                recipient = value(command.recipient)
                for item in command.objects:
                    context.transfer(value(item), recipient)
                produced = ()
            elif isinstance(command, MakeMoveVec):
                produced = ([value(element) for element in command.elements],)
            elif isinstance(command, InvokeEntry):
                produced = self._invoke(command, context, [value(arg) for arg in command.arguments])
            else:
                raise TypeError(f"unsupported command: {type(command).__name__}")

            results.append(produced)
            if produced and all(isinstance(item, (bool, int, str)) for item in produced):
                outputs.append(CommandOutput(command_index=command_index, values=produced))

        return outputs

    def _invoke(
        self, command: InvokeEntry, context: ExecutionContext, arguments: List[Any]
    ) -> Tuple[Any, ...]:
        function = self._functions.get(command.target)
        if function is None:
            raise ExecutionAbort(
                FailureKind.FUNCTION_NOT_FOUND, f"entry function {command.target} not found"
            )

        package, module, _ = split_target(command.target)
        context.package = package
        context.location = f"{short_address(package)}::{module}"
        context.type_arguments = command.type_arguments

        try:
            produced = tuple(function(context, arguments) or ())
        except (KeyError, TypeError, ValueError) as e:
            # Аргументы не того вида для функции: отказ транзакции, а не сбой песочницы
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"{command.target} rejected its arguments: {type(e).__name__}: {e}",
                location=context.location,
            ) from e
        if len(produced) != len(command.result_kinds):
            raise ExecutionAbort(
                FailureKind.INVALID_TRANSACTION,
                f"{command.target} returned {len(produced)} value(s), "
                f"transaction declares {len(command.result_kinds)}",
            )
        return produced

    @staticmethod
    def _settle_loose_objects(context: ExecutionContext) -> None:
        """Объекты, оставшиеся без владельца, переходят отправителю."""
        for obj in context.objects.values():
            if obj.owner is None:
                obj.owner = context.sender

    def _object_changes(
        self, working: Dict[str, StoredObject], mutable_ids: Set[str], lamport: int
    ) -> List[ObjectChange]:
        changes: List[ObjectChange] = []

        for object_id, obj in working.items():
            before = self._objects.get(object_id)
            if before is None:
                change_type = ObjectChangeType.CREATED
            elif (
                object_id in mutable_ids
                or obj.owner != before.owner
                or obj.content != before.content
            ):
                change_type = ObjectChangeType.MUTATED
            else:
                continue
            obj.version = lamport
            changes.append(
                ObjectChange(
                    change_type=change_type,
                    object_id=object_id,
                    object_type=obj.type_tag,
                    owner=obj.owner,
                    version=lamport,
                )
            )

        for object_id, before in self._objects.items():
            if object_id not in working:
                changes.append(
                    ObjectChange(
                        change_type=ObjectChangeType.DELETED,
                        object_id=object_id,
                        object_type=before.type_tag,
                        owner=None,
                        version=lamport,
                    )
                )
        return changes

    def _balance_changes(self, working: Dict[str, StoredObject]) -> List[BalanceChange]:
        before = _coin_totals(self._objects)
        after = _coin_totals(working)
        changes = []
        for key in sorted(set(before) | set(after)):
            delta = after.get(key, 0) - before.get(key, 0)
            if delta:
                owner, coin_type = key
                changes.append(BalanceChange(owner=owner, coin_type=coin_type, amount=delta))
        return changes


def _coin_totals(objects: Dict[str, StoredObject]) -> Dict[Tuple[str, str], int]:
    """Сумма монет по (адрес владельца, тип монеты)."""
    totals: Dict[Tuple[str, str], int] = {}
    for obj in objects.values():
        coin_type = obj.coin_type
        if coin_type is None or obj.owner in (None, OWNER_SHARED, OWNER_IMMUTABLE):
            continue
        key = (obj.owner, coin_type)
        totals[key] = totals.get(key, 0) + obj.content["balance"]
    return totals
