"""
FleetWarden: Scoring

Stability and risk scores per service, with an optional anomaly analyzer
and a deterministic fallback.
"""

from fleetwarden.systems.scoring.analyzer import (
    AnomalyAnalyzer,
    RuleBasedAnalyzer,
    evaluate_rules,
)
from fleetwarden.systems.scoring.scorer import (
    RiskScorer,
    blend_risk,
    compute_fallback_risk,
    compute_stability,
    compute_trend,
    slope_per_hour,
)
from fleetwarden.systems.scoring.types import (
    AnalyzerUnavailable,
    AnalyzerVerdict,
    Recommendation,
    ScoreResult,
)

__all__ = [
    "AnalyzerUnavailable",
    "AnalyzerVerdict",
    "AnomalyAnalyzer",
    "Recommendation",
    "RiskScorer",
    "RuleBasedAnalyzer",
    "ScoreResult",
    "blend_risk",
    "compute_fallback_risk",
    "compute_stability",
    "compute_trend",
    "evaluate_rules",
    "slope_per_hour",
]
