"""ReferenceResolver — учёт inputs / результатов команд и проверка ссылок.

Инварианты:
- Аргумент команды k ссылается на Input или на Result команды с индексом < k
  (строгий причинный порядок: ни своих, ни более поздних результатов)
- Ссылка на несуществующий input / слот результата — DanglingReference
- Линейный (resource) результат используется не более одного раза
  (в том числе дважды внутри одной команды) — иначе ResultAlreadyConsumed
- Копируемые (pure) результаты используются без ограничений
- Inputs не линейны: объект-input может быть передан в несколько команд

Проверка выполняется ДО изменения внутреннего состояния: отклонённая
команда не оставляет следов. Resolver детерминирован для заданной
последовательности вызовов.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from src.core.domain.transaction import Input, InputRef, Reference, ResultRef
from src.core.domain.values import ValueKind
from src.core.errors import DanglingReference, ForwardReference, ResultAlreadyConsumed


class Usage(str, Enum):
    """Способ использования аргумента командой."""

    BORROW = "borrow"  # по ссылке (&, &mut): значение остаётся доступным
    CONSUME = "consume"  # по значению: линейное значение потребляется


@dataclass
class _ResultSlot:
    """Состояние слота результата."""

    kind: ValueKind
    consumed_by: Optional[int] = None

    @property
    def linear(self) -> bool:
        return self.kind.is_resource


class ReferenceResolver:
    """Учёт объявленных inputs и результатов команд с проверкой ссылок."""

    def __init__(self):
        self._input_kinds: List[ValueKind] = []
        self._results: List[List[_ResultSlot]] = []

    @property
    def input_count(self) -> int:
        return len(self._input_kinds)

    @property
    def command_count(self) -> int:
        return len(self._results)

    def declare_input(self, value: Input) -> InputRef:
        """Объявление input; индекс — порядковый номер объявления."""
        self._input_kinds.append(value.kind)
        return InputRef(index=len(self._input_kinds) - 1)

    def validate_reference(
        self, ref: Reference, command_index: int, argument_position: Optional[int] = None
    ) -> None:
        """
        Проверка, что ссылка разрешается в уже произведённое значение.

        Args:
            ref: проверяемая ссылка
            command_index: индекс команды, использующей ссылку
            argument_position: позиция аргумента (для диагностики)

        Raises:
            DanglingReference: input / слот не существует
            ForwardReference: ссылка на текущую или более позднюю команду
        """
        if isinstance(ref, InputRef):
            if ref.index >= len(self._input_kinds):
                raise DanglingReference(
                    f"command {command_index} argument {argument_position}: "
                    f"input {ref.index} is not declared ({len(self._input_kinds)} inputs)",
                    command_index=command_index,
                    argument_position=argument_position,
                    reference=ref,
                )
            return

        if ref.command_index >= command_index:
            raise ForwardReference(
                f"command {command_index} argument {argument_position}: "
                f"references result of command {ref.command_index}",
                command_index=command_index,
                argument_position=argument_position,
                reference=ref,
            )

        slots = self._results[ref.command_index]
        if ref.slot >= len(slots):
            raise DanglingReference(
                f"command {command_index} argument {argument_position}: "
                f"command {ref.command_index} produces {len(slots)} result(s), "
                f"slot {ref.slot} requested",
                command_index=command_index,
                argument_position=argument_position,
                reference=ref,
            )

    def kind_of(
        self,
        ref: Reference,
        command_index: Optional[int] = None,
        argument_position: Optional[int] = None,
    ) -> ValueKind:
        """
        Грубый тип значения, на которое указывает ссылка.

        Args:
            command_index: индекс использующей команды (по умолчанию — следующая)
        """
        if command_index is None:
            command_index = len(self._results)
        self.validate_reference(ref, command_index, argument_position)
        if isinstance(ref, InputRef):
            return self._input_kinds[ref.index]
        return self._results[ref.command_index][ref.slot].kind

    def declare_command(
        self,
        arguments: Sequence[Tuple[Reference, Usage]],
        result_kinds: Sequence[ValueKind],
    ) -> Tuple[ResultRef, ...]:
        """
        Объявление команды.

        Args:
            arguments: (ссылка, способ использования) в порядке позиций аргументов
            result_kinds: грубые типы производимых результатов (по слотам)

        Returns:
            ссылки на слоты результатов новой команды

        Raises:
            DanglingReference, ForwardReference, ResultAlreadyConsumed
        """
        command_index = len(self._results)
        used_here: dict[Tuple[int, int], int] = {}
        consumed_here: List[Tuple[int, int]] = []

        for position, (ref, usage) in enumerate(arguments):
            self.validate_reference(ref, command_index, position)
            if not isinstance(ref, ResultRef):
                continue

            slot = self._results[ref.command_index][ref.slot]
            if not slot.linear:
                continue

            key = (ref.command_index, ref.slot)
            if slot.consumed_by is not None:
                raise ResultAlreadyConsumed(
                    f"command {command_index} argument {position}: "
                    f"{slot.kind.value} result {ref!r} was consumed by command {slot.consumed_by}",
                    command_index=command_index,
                    argument_position=position,
                    reference=ref,
                )
            if key in used_here:
                raise ResultAlreadyConsumed(
                    f"command {command_index} argument {position}: "
                    f"{slot.kind.value} result {ref!r} already used at argument {used_here[key]}",
                    command_index=command_index,
                    argument_position=position,
                    reference=ref,
                )
            used_here[key] = position
            if usage == Usage.CONSUME:
                consumed_here.append(key)

        # Проверки пройдены — фиксируем состояние
        for producer, slot_index in consumed_here:
            self._results[producer][slot_index].consumed_by = command_index
        self._results.append([_ResultSlot(kind=kind) for kind in result_kinds])

        return tuple(
            ResultRef(command_index=command_index, slot=slot_index)
            for slot_index in range(len(result_kinds))
        )

    def unconsumed_resources(self) -> List[ResultRef]:
        """Линейные результаты, которые так и не были потреблены."""
        return [
            ResultRef(command_index=command_index, slot=slot_index)
            for command_index, slots in enumerate(self._results)
            for slot_index, slot in enumerate(slots)
            if slot.linear and slot.consumed_by is None
        ]
