"""
Errors — таксономия ошибок построения, кодирования и исполнения транзакций

Три класса ошибок:
- BuildError: обнаруживаются при построении графа команд, фатальны для build()
- EncodingError: ошибки декодирования канонического бинарного представления
- LedgerError: ошибки, возвращённые внешним ledger (или транспортом к нему)

Все ошибки — структурированные значения: содержат индекс команды, позицию
аргумента, ожидаемое/фактическое значение. Исходы гонки за intent
(IntentAlreadyClaimed и т.п.) ошибками НЕ являются — см. src.intents.
"""

from typing import Any, Optional


# =============================================================================
# BUILD ERRORS
# =============================================================================


class BuildError(Exception):
    """
    Базовая ошибка построения графа команд.

    Attributes:
        command_index: индекс команды, при объявлении которой найдена ошибка
        argument_position: позиция аргумента внутри команды (None — вне аргументов)
        reference: ссылка-нарушитель (InputRef / ResultRef) или None
    """

    def __init__(
        self,
        message: str,
        command_index: Optional[int] = None,
        argument_position: Optional[int] = None,
        reference: Any = None,
    ):
        super().__init__(message)
        self.command_index = command_index
        self.argument_position = argument_position
        self.reference = reference

    def to_dict(self) -> dict[str, Any]:
        """Сериализация для логирования / программной обработки."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "command_index": self.command_index,
            "argument_position": self.argument_position,
            "reference": repr(self.reference) if self.reference is not None else None,
        }


class DanglingReference(BuildError):
    """Ссылка на несуществующий input или несуществующий слот результата."""


class ForwardReference(BuildError):
    """Ссылка на результат текущей или более поздней команды."""


class ResultAlreadyConsumed(BuildError):
    """Повторное использование линейного (resource) результата."""


class TypeMismatch(BuildError):
    """
    Несовпадение арности или грубых типов аргументов с сигнатурой.

    Attributes:
        expected: ожидаемое значение (тип / арность)
        actual: фактическое значение
    """

    def __init__(
        self,
        message: str,
        expected: Any = None,
        actual: Any = None,
        command_index: Optional[int] = None,
        argument_position: Optional[int] = None,
        reference: Any = None,
    ):
        super().__init__(message, command_index, argument_position, reference)
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["expected"] = str(self.expected)
        data["actual"] = str(self.actual)
        return data


# =============================================================================
# ENCODING ERRORS
# =============================================================================


class EncodingError(Exception):
    """Базовая ошибка канонического кодирования."""


class MalformedTransaction(EncodingError):
    """
    Байты не являются валидной канонической транзакцией.

    Декодер никогда не "чинит" вход: любое нарушение схемы или
    причинного порядка ссылок приводит к этой ошибке.
    """

    def __init__(self, reason: str, offset: Optional[int] = None):
        location = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Malformed transaction{location}: {reason}")
        self.reason = reason
        self.offset = offset


# =============================================================================
# LEDGER ERRORS
# =============================================================================


class LedgerError(Exception):
    """Базовая ошибка взаимодействия с ledger."""


class ExecutionError(LedgerError):
    """
    Транзакция отклонена ledger при исполнении (submit).

    Ledger гарантирует, что ни один эффект не применён. Ошибка передаётся
    вызывающему без изменений; автоматических повторов нет.
    """

    def __init__(self, failure: Any, effects: Any = None):
        super().__init__(str(failure))
        self.failure = failure
        self.effects = effects


class SimulationError(ExecutionError):
    """Dry run показал, что транзакция была бы отклонена."""


class LedgerTimeout(LedgerError):
    """Операция без побочных эффектов (simulate / чтение) не уложилась в таймаут."""


class ObjectNotFound(LedgerError):
    """Объект (например, intent) отсутствует на ledger."""

    def __init__(self, object_id: str):
        super().__init__(f"Object {object_id} not found")
        self.object_id = object_id


class SubmissionOutcomeUnknown(LedgerError):
    """
    Таймаут после отправки транзакции.

    Отмена после submit носит рекомендательный характер: исход определяет
    ledger, а не вызывающий. Состояние нужно перечитать.
    """

    def __init__(self, digest: str, timeout_sec: float):
        super().__init__(
            f"Submission {digest} did not complete within {timeout_sec:.1f}s; "
            "outcome is decided by the ledger"
        )
        self.digest = digest
        self.timeout_sec = timeout_sec
