"""
MarginPosition — производная оценка риска маржинальной позиции

Не хранится ядром: вычисляется по запросу из внешних балансов и цен
оракула (src.risk.evaluator).
"""

from enum import Enum

from pydantic import BaseModel, Field


class RiskBand(str, Enum):
    """
    Класс риска по risk ratio (bps, нижняя граница включительно).

    < 5000 HEALTHY, [5000, 7000) CAUTION, [7000, 8500) WARNING, ≥ 8500 CRITICAL
    """

    HEALTHY = "HEALTHY"
    CAUTION = "CAUTION"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class MarginPosition(BaseModel):
    """Оценка маржинальной позиции (все стоимости — целые в единицах котировки)."""

    collateral_value: int = Field(..., ge=0, description="Стоимость залога")
    debt_value: int = Field(..., ge=0, description="Стоимость долга")
    risk_ratio_bps: int = Field(..., ge=0, description="debt / collateral в bps")
    band: RiskBand = Field(..., description="Класс риска")

    model_config = {"frozen": True}
