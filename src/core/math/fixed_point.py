"""
Fixed Point — целочисленная арифметика в базисных пунктах

Модуль обеспечивает детерминированные вычисления без float:
- Безопасное деление целых с явным результатом для нулевого знаменателя
- Умножение-деление с округлением вниз / вверх без потери точности
- Пересчёт количества актива в стоимость по цене оракула (цена + decimals)

КРИТИЧЕСКИЕ ИНВАРИАНТЫ:
1. Float не используется ни в одной операции
2. Деление на ноль никогда не происходит (возвращается явный fallback)
3. Отрицательные входы отклоняются (ValueError), а не "исправляются"
4. Все операции детерминированы и воспроизводимы
"""

from typing import Final


# =============================================================================
# КОНСТАНТЫ
# =============================================================================

# Базисных пунктов в единице (100% = 10_000 bps)
BPS_SCALE: Final[int] = 10_000

# Максимальное значение u64 на ledger
U64_MAX: Final[int] = 2**64 - 1


# =============================================================================
# ВАЛИДАЦИЯ
# =============================================================================


def validate_non_negative_int(value: int, name: str = "value") -> int:
    """
    Проверка, что value — неотрицательное целое (bool не допускается).

    Raises:
        ValueError: если value не int или отрицательное
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return value


# =============================================================================
# УМНОЖЕНИЕ-ДЕЛЕНИЕ
# =============================================================================


def mul_div_floor(a: int, b: int, denominator: int) -> int:
    """
    floor(a * b / denominator) без промежуточного округления.

    Raises:
        ValueError: при denominator <= 0 или отрицательных множителях
    """
    validate_non_negative_int(a, "a")
    validate_non_negative_int(b, "b")
    if denominator <= 0:
        raise ValueError(f"denominator must be positive, got {denominator}")
    return (a * b) // denominator


def mul_div_ceil(a: int, b: int, denominator: int) -> int:
    """ceil(a * b / denominator) без промежуточного округления."""
    validate_non_negative_int(a, "a")
    validate_non_negative_int(b, "b")
    if denominator <= 0:
        raise ValueError(f"denominator must be positive, got {denominator}")
    return -((-(a * b)) // denominator)


def ratio_bps(numerator: int, denominator: int, unbounded: int = U64_MAX) -> int:
    """
    Отношение numerator / denominator в bps с округлением вниз.

    Args:
        numerator: числитель (≥ 0)
        denominator: знаменатель (≥ 0)
        unbounded: результат для ненулевого числителя при нулевом знаменателе

    Returns:
        floor(numerator * 10_000 / denominator);
        0 если numerator == 0 (в том числе при нулевом знаменателе);
        unbounded если denominator == 0 и numerator > 0

    Examples:
        >>> ratio_bps(500, 1000)
        5000
        >>> ratio_bps(0, 0)
        0
    """
    validate_non_negative_int(numerator, "numerator")
    validate_non_negative_int(denominator, "denominator")

    if numerator == 0:
        return 0
    if denominator == 0:
        return unbounded
    return mul_div_floor(numerator, BPS_SCALE, denominator)


def apply_bps(amount: int, bps: int) -> int:
    """Доля amount в bps с округлением вниз: amount * bps / 10_000."""
    return mul_div_floor(amount, bps, BPS_SCALE)


def value_at_price(amount: int, price: int, price_decimals: int) -> int:
    """
    Стоимость количества актива по цене оракула.

    price задан в фиксированной точке с price_decimals знаками:
        value = floor(amount * price / 10^price_decimals)

    Raises:
        ValueError: при отрицательных входах
    """
    validate_non_negative_int(price_decimals, "price_decimals")
    return mul_div_floor(amount, price, 10**price_decimals)


def format_bps(bps: int) -> str:
    """Человекочитаемое представление bps: 5000 → '50.00%'."""
    if bps >= U64_MAX:
        return "unbounded"
    return f"{bps // 100}.{bps % 100:02d}%"
