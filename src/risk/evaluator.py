"""
Risk Evaluator — risk ratio маржинальной позиции и класс риска

risk ratio = debt_value / collateral_value в базисных пунктах
(целочисленно, округление вниз):

    ratio_bps = floor(debt_value * 10_000 / collateral_value)

Граничные случаи:
- debt_value == 0 → 0 (в том числе при нулевом залоге)
- collateral_value == 0, debt_value > 0 → RISK_RATIO_UNBOUNDED (CRITICAL)

Классы (нижняя граница включительно):
    < 5000 HEALTHY | [5000, 7000) CAUTION | [7000, 8500) WARNING | ≥ 8500 CRITICAL

Модуль не выполняет I/O: стоимости считает вызывающий (или
evaluate_margin_position по ценам PriceOracle).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Final, Mapping, Protocol

from src.core.domain.margin import MarginPosition, RiskBand
from src.core.math.fixed_point import U64_MAX, ratio_bps, value_at_price


# =============================================================================
# КОНСТАНТЫ
# =============================================================================

RISK_CAUTION_BPS: Final[int] = 5_000
RISK_WARNING_BPS: Final[int] = 7_000
RISK_CRITICAL_BPS: Final[int] = 8_500

# Ниже этого уровня агент может рассмотреть увеличение позиции
RISK_INCREASE_BELOW_BPS: Final[int] = 4_000

# Ratio долга при нулевом залоге
RISK_RATIO_UNBOUNDED: Final[int] = U64_MAX


@dataclass(frozen=True)
class RiskThresholds:
    """Пороги классов риска (bps)."""

    caution_bps: int = RISK_CAUTION_BPS
    warning_bps: int = RISK_WARNING_BPS
    critical_bps: int = RISK_CRITICAL_BPS
    increase_below_bps: int = RISK_INCREASE_BELOW_BPS

    def __post_init__(self):
        if not (
            0 < self.increase_below_bps <= self.caution_bps < self.warning_bps < self.critical_bps
        ):
            raise ValueError(
                "thresholds must satisfy 0 < increase_below ≤ caution < warning < critical, got "
                f"{self.increase_below_bps}/{self.caution_bps}/{self.warning_bps}/{self.critical_bps}"
            )


DEFAULT_THRESHOLDS: Final[RiskThresholds] = RiskThresholds()


class MarginAction(str, Enum):
    """Рекомендация агенту по маржинальной позиции."""

    EMERGENCY_REPAY = "EMERGENCY_REPAY"
    DELEVERAGE = "DELEVERAGE"
    CONSIDER_INCREASE = "CONSIDER_INCREASE"
    HOLD = "HOLD"


# =============================================================================
# ЧИСТЫЕ ФУНКЦИИ
# =============================================================================


def risk_ratio_bps(collateral_value: int, debt_value: int) -> int:
    """
    Risk ratio в bps.

    Examples:
        >>> risk_ratio_bps(1000, 500)
        5000
        >>> risk_ratio_bps(1000, 0)
        0
        >>> risk_ratio_bps(100, 90)
        9000

    Raises:
        ValueError: при отрицательных или нецелых стоимостях
    """
    return ratio_bps(debt_value, collateral_value, unbounded=RISK_RATIO_UNBOUNDED)


def classify_risk(ratio: int, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> RiskBand:
    """Класс риска по ratio (нижняя граница включительно)."""
    if ratio >= thresholds.critical_bps:
        return RiskBand.CRITICAL
    if ratio >= thresholds.warning_bps:
        return RiskBand.WARNING
    if ratio >= thresholds.caution_bps:
        return RiskBand.CAUTION
    return RiskBand.HEALTHY


def recommend_action(ratio: int, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> MarginAction:
    """
    Рекомендация по ratio:
    CRITICAL → срочное погашение, WARNING → снижение плеча,
    ниже increase_below → можно увеличить позицию, иначе — удерживать.
    """
    band = classify_risk(ratio, thresholds)
    if band == RiskBand.CRITICAL:
        return MarginAction.EMERGENCY_REPAY
    if band == RiskBand.WARNING:
        return MarginAction.DELEVERAGE
    if ratio < thresholds.increase_below_bps:
        return MarginAction.CONSIDER_INCREASE
    return MarginAction.HOLD


# =============================================================================
# ОРАКУЛ
# =============================================================================


@dataclass(frozen=True)
class OraclePrice:
    """Цена актива в фиксированной точке: price / 10^decimals единиц котировки."""

    price: int
    decimals: int

    def __post_init__(self):
        if self.price < 0 or self.decimals < 0:
            raise ValueError(f"price and decimals must be non-negative: {self.price}, {self.decimals}")


class PriceOracle(Protocol):
    """Источник цен (чтение, реализация внешняя)."""

    def price_of(self, coin_type: str) -> OraclePrice:
        ...


@dataclass(frozen=True)
class StaticPriceOracle:
    """Оракул с фиксированными ценами (песочница, тесты)."""

    prices: Mapping[str, OraclePrice] = field(default_factory=dict)

    def price_of(self, coin_type: str) -> OraclePrice:
        try:
            return self.prices[coin_type]
        except KeyError:
            raise LookupError(f"no oracle price for {coin_type}") from None


def holdings_value(amounts: Mapping[str, int], oracle: PriceOracle) -> int:
    """Суммарная стоимость количеств активов в единицах котировки."""
    total = 0
    for coin_type, amount in amounts.items():
        if amount == 0:
            continue
        price = oracle.price_of(coin_type)
        total += value_at_price(amount, price.price, price.decimals)
    return total


def evaluate_margin_position(
    collateral: Mapping[str, int],
    debt: Mapping[str, int],
    oracle: PriceOracle,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> MarginPosition:
    """
    Оценка позиции по количествам активов и ценам оракула.

    Args:
        collateral: количество залога по типам монет
        debt: количество долга по типам монет
        oracle: источник цен

    Raises:
        LookupError: оракул не знает цену актива с ненулевым количеством
    """
    collateral_value = holdings_value(collateral, oracle)
    debt_value = holdings_value(debt, oracle)
    ratio = risk_ratio_bps(collateral_value, debt_value)
    return MarginPosition(
        collateral_value=collateral_value,
        debt_value=debt_value,
        risk_ratio_bps=ratio,
        band=classify_risk(ratio, thresholds),
    )


class RiskEvaluator:
    """Оценщик риска с заданными порогами."""

    def __init__(self, thresholds: RiskThresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds

    def ratio(self, collateral_value: int, debt_value: int) -> int:
        return risk_ratio_bps(collateral_value, debt_value)

    def classify(self, ratio: int) -> RiskBand:
        return classify_risk(ratio, self.thresholds)

    def evaluate(self, collateral_value: int, debt_value: int) -> MarginPosition:
        ratio = self.ratio(collateral_value, debt_value)
        return MarginPosition(
            collateral_value=collateral_value,
            debt_value=debt_value,
            risk_ratio_bps=ratio,
            band=self.classify(ratio),
        )

    def evaluate_holdings(
        self, collateral: Mapping[str, int], debt: Mapping[str, int], oracle: PriceOracle
    ) -> MarginPosition:
        return evaluate_margin_position(collateral, debt, oracle, self.thresholds)

    def recommend(self, position: MarginPosition) -> MarginAction:
        return recommend_action(position.risk_ratio_bps, self.thresholds)
