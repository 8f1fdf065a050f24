"""
Aggregate statistics over agent suggestions.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from .models import AgentSuggestion, Category, utcnow


TIMEFRAME_DAYS = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}
DEFAULT_TIMEFRAME = "7d"

BUCKET_BOUNDARIES = [0.0, 0.2, 0.4, 0.6, 0.8, 1.0]


class CategoryStats(BaseModel):
    category: Category
    count: int
    avg_confidence: float


class ConfidenceBucket(BaseModel):
    lower: float
    upper: float
    count: int


class SuggestionStats(BaseModel):
    """Suggestion statistics for one timeframe."""

    timeframe: str
    total_suggestions: int = 0
    auto_closed_count: int = 0
    auto_close_rate: float = Field(default=0.0, description="Percent, 2 decimals")
    average_confidence: float = 0.0
    category_stats: list[CategoryStats] = Field(default_factory=list)
    confidence_distribution: list[ConfidenceBucket] = Field(default_factory=list)


def _bucket_index(confidence: float) -> int:
    # The last bucket is closed so a confidence of 1.0 is counted
    for index in range(len(BUCKET_BOUNDARIES) - 2):
        if confidence < BUCKET_BOUNDARIES[index + 1]:
            return index
    return len(BUCKET_BOUNDARIES) - 2


def compute_stats(
    suggestions: Iterable[AgentSuggestion],
    timeframe: str = DEFAULT_TIMEFRAME,
    now: Optional[datetime] = None,
) -> SuggestionStats:
    """
    Summarize suggestions created within ``timeframe``.

    Args:
        suggestions: Suggestions to summarize.
        timeframe: One of ``1d``, ``7d``, ``30d``, ``90d``; anything else
            falls back to ``7d``.
        now: Reference time, defaults to the current UTC time.

    Returns:
        SuggestionStats for the window.
    """
    if timeframe not in TIMEFRAME_DAYS:
        timeframe = DEFAULT_TIMEFRAME
    now = now or utcnow()
    start = now - timedelta(days=TIMEFRAME_DAYS[timeframe])

    window = [s for s in suggestions if s.created_at >= start]

    buckets = [
        ConfidenceBucket(lower=lower, upper=upper, count=0)
        for lower, upper in zip(BUCKET_BOUNDARIES, BUCKET_BOUNDARIES[1:])
    ]
    if not window:
        return SuggestionStats(timeframe=timeframe, confidence_distribution=buckets)

    counts = [0] * len(buckets)
    per_category: dict[Category, list[float]] = {}
    for suggestion in window:
        counts[_bucket_index(suggestion.confidence)] += 1
        per_category.setdefault(suggestion.predicted_category, []).append(suggestion.confidence)

    auto_closed = sum(1 for s in window if s.auto_closed)
    total = len(window)

    return SuggestionStats(
        timeframe=timeframe,
        total_suggestions=total,
        auto_closed_count=auto_closed,
        auto_close_rate=round(auto_closed / total * 100, 2),
        average_confidence=round(sum(s.confidence for s in window) / total, 2),
        category_stats=[
            CategoryStats(
                category=category,
                count=len(values),
                avg_confidence=round(sum(values) / len(values), 2),
            )
            for category, values in per_category.items()
        ],
        confidence_distribution=[
            bucket.model_copy(update={"count": count})
            for bucket, count in zip(buckets, counts)
        ],
    )
