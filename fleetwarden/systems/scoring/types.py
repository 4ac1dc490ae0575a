"""
FleetWarden: Scoring Type Definitions
"""

from __future__ import annotations

from pydantic import Field

from fleetwarden.primitives.common import FleetBaseModel
from fleetwarden.systems.fleet.types import RiskSource, RiskTrend


class AnalyzerUnavailable(Exception):
    """The anomaly analyzer cannot answer right now. Scoring falls back."""


class Recommendation(FleetBaseModel):
    """One suggested operator action attached to a verdict."""

    action: str
    reason: str
    priority: str = "MEDIUM"  # LOW | MEDIUM | HIGH | CRITICAL


class AnalyzerVerdict(FleetBaseModel):
    """What an anomaly analyzer concluded about one service's recent window."""

    anomaly_detected: bool = False
    anomaly_type: str | None = None
    anomaly_description: str | None = None
    risk_hint: float = Field(0.0, ge=0.0, le=100.0)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    summary: str = ""
    recommendations: list[Recommendation] = Field(default_factory=list)

    @property
    def top_recommendation(self) -> str | None:
        if not self.recommendations:
            return None
        return self.recommendations[0].action


class ScoreResult(FleetBaseModel):
    """The outcome of one risk scoring pass for one service."""

    service_id: str
    risk_score: int = Field(ge=0, le=100)
    risk_trend: RiskTrend
    source: RiskSource
    fallback_score: int = Field(ge=0, le=100)
    verdict: AnalyzerVerdict | None = None
