"""
CommandGraphBuilder — пошаговое построение атомарной транзакции

Builder принимает inputs и commands по одному. Каждая команда проверяется
немедленно:
- ссылки разрешаются ReferenceResolver (причинный порядок, линейность)
- грубые типы аргументов сверяются с фиксированной формой встроенных команд
  и с объявленной сигнатурой для InvokeEntry

Первая же BuildError фатальна для builder: все последующие вызовы, включая
build(), повторно поднимают её. Частично построенную транзакцию получить
нельзя.

Способ использования аргументов встроенными командами:
- SplitCoins: source заимствуется, amounts — pure
- MergeCoins: destination заимствуется, sources потребляются
- TransferObjects: objects потребляются
- MakeMoveVec: elements потребляются
- InvokeEntry: согласно сигнатуре (без сигнатуры — BuilderConfig)
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple, Union

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
from src.core.domain.values import PureType, ValueKind, short_address
from src.core.errors import BuildError, TypeMismatch
from src.ptb.resolver import ReferenceResolver, Usage
from src.ptb.signatures import SignatureRegistry, is_compatible

logger = logging.getLogger(__name__)

_Plan = Tuple[Command, List[Tuple[Reference, Usage]], Tuple[ValueKind, ...]]


def _is_object_like(kind: ValueKind) -> bool:
    return kind.is_object_like


def _is_u64(kind: ValueKind) -> bool:
    return kind == ValueKind.U64


def _is_address(kind: ValueKind) -> bool:
    return kind == ValueKind.ADDRESS


class CommandGraphBuilder:
    """
    Построитель графа команд.

    Args:
        signatures: реестр сигнатур entry-функций
        config: поведение для target без сигнатуры
    """

    def __init__(
        self,
        signatures: Optional[SignatureRegistry] = None,
        config: Optional[BuilderConfig] = None,
    ):
        self.signatures = signatures if signatures is not None else SignatureRegistry()
        self.config = config or BuilderConfig()
        self._resolver = ReferenceResolver()
        self._inputs: List[Input] = []
        self._commands: List[Command] = []
        self._object_refs: dict[str, InputRef] = {}
        self._failure: Optional[BuildError] = None

    @classmethod
    def from_transaction(
        cls,
        tx: Transaction,
        signatures: Optional[SignatureRegistry] = None,
        config: Optional[BuilderConfig] = None,
    ) -> "CommandGraphBuilder":
        """
        Повторное объявление готовой транзакции (проверка графа целиком).

        Inputs объявляются как есть, без дедупликации объектов: индексы
        совпадают с исходной транзакцией.

        Raises:
            BuildError: граф нарушает причинный порядок, линейность или типы
        """
        builder = cls(signatures, config)
        for item in tx.inputs:
            builder.add_input(item)
        for command in tx.commands:
            builder.add_command(command)
        return builder

    # -------------------------------------------------------------------------
    # Состояние
    # -------------------------------------------------------------------------

    @property
    def inputs(self) -> Tuple[Input, ...]:
        return tuple(self._inputs)

    @property
    def commands(self) -> Tuple[Command, ...]:
        return tuple(self._commands)

    @property
    def failure(self) -> Optional[BuildError]:
        """Первая ошибка построения (None — builder исправен)."""
        return self._failure

    def kind_of(self, ref: Reference) -> ValueKind:
        """Грубый тип значения по ссылке (относительно следующей команды)."""
        return self._resolver.kind_of(ref)

    def _ensure_usable(self) -> None:
        if self._failure is not None:
            raise self._failure

    def _fail(self, error: BuildError) -> BuildError:
        self._failure = error
        logger.warning("Transaction build failed: %s", error)
        return error

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def add_input(self, value: Input) -> InputRef:
        """Объявление input как есть (индекс — порядковый номер)."""
        self._ensure_usable()
        ref = self._resolver.declare_input(value)
        self._inputs.append(value)
        if isinstance(value, ObjectInput):
            self._object_refs.setdefault(value.object_id, ref)
        return ref

    def pure(self, pure_type: Union[PureType, str], value) -> InputRef:
        """
        Pure-input заданного типа.

        Raises:
            TypeMismatch: значение не подходит под тип (диапазон, формат адреса)
        """
        self._ensure_usable()
        pure_type = PureType(pure_type)
        try:
            item = PureInput(type=pure_type, value=value)
        except ValidationError as e:
            raise self._fail(
                TypeMismatch(
                    f"input {len(self._inputs)}: invalid {pure_type.value} value {value!r}",
                    expected=pure_type.value,
                    actual=value,
                )
            ) from e
        return self.add_input(item)

    def u64(self, value: int) -> InputRef:
        return self.pure(PureType.U64, value)

    def address(self, value: str) -> InputRef:
        return self.pure(PureType.ADDRESS, value)

    def string(self, value: str) -> InputRef:
        return self.pure(PureType.STRING, value)

    def object(
        self,
        object_id: str,
        version: int,
        ownership: ObjectOwnership = ObjectOwnership.OWNED,
        mutable: bool = True,
        type_tag: Optional[str] = None,
    ) -> InputRef:
        """
        Объектный input. Повторное объявление того же объекта возвращает
        существующую ссылку.

        Raises:
            TypeMismatch: объект уже объявлен с другой версией / режимом доступа
        """
        self._ensure_usable()
        try:
            item = ObjectInput(
                object_id=object_id,
                version=version,
                ownership=ownership,
                mutable=mutable,
                type_tag=type_tag,
            )
        except ValidationError as e:
            raise self._fail(
                TypeMismatch(
                    f"input {len(self._inputs)}: invalid object input {object_id!r}",
                    expected="object id and u64 version",
                    actual=(object_id, version),
                )
            ) from e
        return self.object_input(item)

    def object_input(self, item: ObjectInput) -> InputRef:
        """Объявление готового ObjectInput с дедупликацией по object_id."""
        self._ensure_usable()
        existing = self._object_refs.get(item.object_id)
        if existing is None:
            return self.add_input(item)

        declared = self._inputs[existing.index]
        if (declared.version, declared.ownership, declared.mutable) != (
            item.version,
            item.ownership,
            item.mutable,
        ):
            raise self._fail(
                TypeMismatch(
                    f"object {short_address(item.object_id)} already declared as "
                    f"input {existing.index} with a different version or access",
                    expected=(declared.version, declared.ownership.value, declared.mutable),
                    actual=(item.version, item.ownership.value, item.mutable),
                    reference=existing,
                )
            )
        return existing

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def add_command(self, command: Command) -> Tuple[ResultRef, ...]:
        """
        Объявление команды.

        Returns:
            ссылки на слоты результатов (пустой кортеж, если результатов нет)

        Raises:
            DanglingReference, ForwardReference, ResultAlreadyConsumed, TypeMismatch
        """
        self._ensure_usable()
        command_index = len(self._commands)
        try:
            command, arguments, result_kinds = self._plan(command, command_index)
            results = self._resolver.declare_command(arguments, result_kinds)
        except BuildError as error:
            self._fail(error)
            raise

        self._commands.append(command)
        logger.debug(
            "Command %d declared: %s -> %d result(s)", command_index, command.tag, len(results)
        )
        return results

    def split_coins(
        self, source: Reference, amounts: Sequence[Union[int, Reference]]
    ) -> Tuple[ResultRef, ...]:
        """Отщепление монет; целые amounts объявляются как u64 inputs."""
        self._ensure_usable()
        amount_refs = tuple(self._as_u64(amount) for amount in amounts)
        return self.add_command(self._construct(SplitCoins, source=source, amounts=amount_refs))

    def merge_coins(self, destination: Reference, sources: Sequence[Reference]) -> None:
        self._ensure_usable()
        self.add_command(
            self._construct(MergeCoins, destination=destination, sources=tuple(sources))
        )

    def transfer_objects(
        self, objects: Sequence[Reference], recipient: Union[str, Reference]
    ) -> None:
        """Передача объектов; строковый recipient объявляется как address input."""
        self._ensure_usable()
        recipient_ref = self._as_address(recipient)
        self.add_command(
            self._construct(TransferObjects, objects=tuple(objects), recipient=recipient_ref)
        )

    def make_move_vec(
        self, elements: Sequence[Reference], element_type: Optional[str] = None
    ) -> ResultRef:
        self._ensure_usable()
        (result,) = self.add_command(
            self._construct(MakeMoveVec, elements=tuple(elements), element_type=element_type)
        )
        return result

    def invoke(
        self,
        target: str,
        arguments: Sequence[Reference] = (),
        type_arguments: Sequence[str] = (),
        result_kinds: Optional[Sequence[ValueKind]] = None,
    ) -> Tuple[ResultRef, ...]:
        """
        Вызов entry-функции.

        Args:
            result_kinds: типы результатов для target без сигнатуры
                (None — BuilderConfig.default_result_count объектов)
        """
        self._ensure_usable()
        command = self._construct(
            InvokeEntry,
            target=target,
            type_arguments=tuple(type_arguments),
            arguments=tuple(arguments),
        )
        if result_kinds is not None:
            kinds = tuple(ValueKind(kind) for kind in result_kinds)
            command = command.model_copy(update={"result_kinds": kinds})
        elif self.signatures.get(command.target) is None:
            kinds = (ValueKind.OBJECT,) * self.config.default_result_count
            command = command.model_copy(update={"result_kinds": kinds})
        return self.add_command(command)

    def split_invoke_transfer(
        self,
        source: Reference,
        amount: Union[int, Reference],
        target: str,
        arguments: Sequence[Reference] = (),
        type_arguments: Sequence[str] = (),
        recipient: Union[str, Reference, None] = None,
        coin_position: int = 0,
        result_kinds: Optional[Sequence[ValueKind]] = None,
    ) -> Tuple[ResultRef, ...]:
        """
        Типовая цепочка: отщепить монету, передать её в вызов, отправить
        объектные результаты получателю.

        Args:
            coin_position: позиция отщеплённой монеты среди аргументов вызова
            recipient: получатель объектных результатов (None — не передавать)

        Returns:
            результаты вызова (переданные получателю уже потреблены)
        """
        (coin,) = self.split_coins(source, [amount])
        call_arguments = list(arguments)
        call_arguments.insert(coin_position, coin)
        results = self.invoke(target, call_arguments, type_arguments, result_kinds)

        if recipient is not None:
            objects = [ref for ref in results if self.kind_of(ref).is_object_like]
            if objects:
                self.transfer_objects(objects, recipient)
        return results

    def build(self) -> Transaction:
        """
        Завершение построения.

        Raises:
            BuildError: первая ошибка, полученная builder
        """
        if self._failure is not None:
            raise self._failure

        leftover = self._resolver.unconsumed_resources()
        if leftover:
            logger.debug("Resource results left unconsumed: %s", leftover)

        tx = Transaction(inputs=tuple(self._inputs), commands=tuple(self._commands))
        logger.debug(
            "Transaction built: %d input(s), %d command(s)", len(tx.inputs), len(tx.commands)
        )
        return tx

    # -------------------------------------------------------------------------
    # Внутреннее
    # -------------------------------------------------------------------------

    def _as_u64(self, value: Union[int, Reference]) -> Reference:
        if isinstance(value, (InputRef, ResultRef)):
            return value
        return self.u64(value)

    def _as_address(self, value: Union[str, Reference]) -> Reference:
        if isinstance(value, (InputRef, ResultRef)):
            return value
        return self.address(value)

    def _construct(self, model, **fields):
        """Создание модели команды; ошибки формы — TypeMismatch."""
        try:
            return model(**fields)
        except ValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error["loc"])
            raise self._fail(
                TypeMismatch(
                    f"command {len(self._commands)}: invalid {model.__name__}.{location}: "
                    f"{error['msg']}",
                    expected=location,
                    actual=error.get("input"),
                    command_index=len(self._commands),
                )
            ) from e

    def _expect(
        self,
        ref: Reference,
        command_index: int,
        position: int,
        accept: Callable[[ValueKind], bool],
        expected: str,
    ) -> ValueKind:
        actual = self._resolver.kind_of(ref, command_index, position)
        if not accept(actual):
            raise TypeMismatch(
                f"command {command_index} argument {position}: "
                f"expected {expected}, got {actual.value}",
                expected=expected,
                actual=actual.value,
                command_index=command_index,
                argument_position=position,
                reference=ref,
            )
        return actual

    def _plan(self, command: Command, command_index: int) -> _Plan:
        """Проверка типов и способ использования аргументов команды."""
        if isinstance(command, SplitCoins):
            self._expect(command.source, command_index, 0, _is_object_like, "coin")
            arguments = [(command.source, Usage.BORROW)]
            for position, amount in enumerate(command.amounts, start=1):
                self._expect(amount, command_index, position, _is_u64, "u64")
                arguments.append((amount, Usage.BORROW))
            return command, arguments, (ValueKind.COIN,) * len(command.amounts)

        if isinstance(command, MergeCoins):
            self._expect(command.destination, command_index, 0, _is_object_like, "coin")
            arguments = [(command.destination, Usage.BORROW)]
            for position, source in enumerate(command.sources, start=1):
                self._expect(source, command_index, position, _is_object_like, "coin")
                arguments.append((source, Usage.CONSUME))
            return command, arguments, ()

        if isinstance(command, TransferObjects):
            arguments = []
            for position, item in enumerate(command.objects):
                self._expect(item, command_index, position, _is_object_like, "object")
                arguments.append((item, Usage.CONSUME))
            self._expect(
                command.recipient, command_index, len(command.objects), _is_address, "address"
            )
            arguments.append((command.recipient, Usage.BORROW))
            return command, arguments, ()

        if isinstance(command, MakeMoveVec):
            return self._plan_make_move_vec(command, command_index)

        if isinstance(command, InvokeEntry):
            return self._plan_invoke(command, command_index)

        raise TypeError(f"unsupported command: {type(command).__name__}")

    def _plan_make_move_vec(self, command: MakeMoveVec, command_index: int) -> _Plan:
        if not command.elements:
            if command.element_type is None:
                raise TypeMismatch(
                    f"command {command_index}: empty vector requires an element type",
                    expected="element_type",
                    actual=None,
                    command_index=command_index,
                )
            return command, [], (ValueKind.VECTOR,)

        first = self._resolver.kind_of(command.elements[0], command_index, 0)
        arguments = [(command.elements[0], Usage.CONSUME)]
        for position, element in enumerate(command.elements[1:], start=1):
            self._expect(
                element,
                command_index,
                position,
                lambda kind: is_compatible(first, kind),
                first.value,
            )
            arguments.append((element, Usage.CONSUME))

        result = ValueKind.OBJECT_VECTOR if first.is_resource else ValueKind.VECTOR
        return command, arguments, (result,)

    def _plan_invoke(self, command: InvokeEntry, command_index: int) -> _Plan:
        signature = self.signatures.get(command.target)

        if signature is None:
            if self.config.strict_signatures:
                raise TypeMismatch(
                    f"command {command_index}: no signature declared for {command.target}",
                    expected="declared signature",
                    actual=command.target,
                    command_index=command_index,
                )
            usage = Usage.CONSUME if self.config.consume_unknown_arguments else Usage.BORROW
            arguments = [(ref, usage) for ref in command.arguments]
            return command, arguments, command.result_kinds

        if len(command.type_arguments) != signature.type_parameter_count:
            raise TypeMismatch(
                f"command {command_index}: {command.target} takes "
                f"{signature.type_parameter_count} type argument(s), "
                f"got {len(command.type_arguments)}",
                expected=signature.type_parameter_count,
                actual=len(command.type_arguments),
                command_index=command_index,
            )

        if len(command.arguments) != len(signature.parameters):
            raise TypeMismatch(
                f"command {command_index}: {command.target} takes "
                f"{len(signature.parameters)} argument(s), got {len(command.arguments)}",
                expected=len(signature.parameters),
                actual=len(command.arguments),
                command_index=command_index,
            )

        arguments = []
        for position, (ref, param) in enumerate(zip(command.arguments, signature.parameters)):
            expected_kind = param.kind
            self._expect(
                ref,
                command_index,
                position,
                lambda kind: is_compatible(expected_kind, kind),
                expected_kind.value,
            )
            arguments.append((ref, param.usage))

        if command.result_kinds and command.result_kinds != signature.returns:
            raise TypeMismatch(
                f"command {command_index}: {command.target} returns "
                f"{[kind.value for kind in signature.returns]}",
                expected=signature.returns,
                actual=command.result_kinds,
                command_index=command_index,
            )
        if not command.result_kinds and signature.returns:
            command = command.model_copy(update={"result_kinds": signature.returns})

        return command, arguments, signature.returns
