"""
Composite scoring of data sources.

    score = w_h * health
          + w_s * max(0, 100 - response_time / 10)
          + w_r * max(0, 100 - error_rate)
          + w_p * max(0, 100 - priority * 10)

Every term is non-decreasing in health and non-increasing in
latency, error rate and priority number.
"""

from data_sources.config import ScoreWeights, SelectionThresholds
from data_sources.models import DataSource


def speed_score(response_time: float) -> float:
    return max(0.0, 100.0 - response_time / 10.0)


def reliability_score(error_rate: float) -> float:
    return max(0.0, 100.0 - error_rate)


def priority_score(priority: int) -> float:
    return max(0.0, 100.0 - priority * 10.0)


def composite_score(source: DataSource, weights: ScoreWeights) -> float:
    return (
        source.health_score * weights.health
        + speed_score(source.response_time) * weights.speed
        + reliability_score(source.error_rate) * weights.reliability
        + priority_score(source.priority) * weights.priority
    )


def is_selectable(source: DataSource, thresholds: SelectionThresholds) -> bool:
    """Health above the minimum, error rate below the maximum, allowance left."""
    return (
        source.health_score > thresholds.min_health
        and source.rate_limit_remaining > 0
        and source.error_rate < thresholds.max_error_rate
    )
