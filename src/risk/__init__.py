"""
Risk evaluation for margin positions.
"""

from src.risk.evaluator import (
    DEFAULT_THRESHOLDS,
    RISK_CAUTION_BPS,
    RISK_CRITICAL_BPS,
    RISK_INCREASE_BELOW_BPS,
    RISK_RATIO_UNBOUNDED,
    RISK_WARNING_BPS,
    MarginAction,
    OraclePrice,
    PriceOracle,
    RiskEvaluator,
    RiskThresholds,
    StaticPriceOracle,
    classify_risk,
    evaluate_margin_position,
    holdings_value,
    recommend_action,
    risk_ratio_bps,
)

__all__ = [
    # Constants
    "DEFAULT_THRESHOLDS",
    "RISK_CAUTION_BPS",
    "RISK_CRITICAL_BPS",
    "RISK_INCREASE_BELOW_BPS",
    "RISK_RATIO_UNBOUNDED",
    "RISK_WARNING_BPS",
    # Types
    "MarginAction",
    "OraclePrice",
    "PriceOracle",
    "RiskEvaluator",
    "RiskThresholds",
    "StaticPriceOracle",
    # Functions
    "classify_risk",
    "evaluate_margin_position",
    "holdings_value",
    "recommend_action",
    "risk_ratio_bps",
]
