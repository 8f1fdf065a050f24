"""
Auto-close vs. human handoff policy.
"""

import logging
import math
from typing import Optional

from .models import Decision, TriageConfig


logger = logging.getLogger(__name__)


class DecisionError(Exception):
    """Error while evaluating the decision policy. Never leaves ``decide``."""
    pass


AUTO_CLOSE_REASON = "High confidence classification with auto-close enabled"
HANDOFF_REASON = "Low confidence or auto-close disabled - requires human review"
ERROR_REASON = "Error in decision making - defaulting to human review"


class DecisionPolicy:
    """
    Compares the classification confidence against the global threshold.

    ``auto_closed = config.auto_close_enabled and confidence >= threshold``.
    Any error while evaluating fails safe to a human handoff.
    """

    def decide(self, confidence: float, config: Optional[TriageConfig]) -> Decision:
        try:
            return self._evaluate(confidence, config)
        except Exception as e:
            logger.error(f"Decision policy failed, handing off to a human: {e}")
            return Decision(
                auto_closed=False,
                confidence=self._safe_float(confidence),
                threshold=0.0,
                auto_close_enabled=False,
                reasoning=f"{ERROR_REASON} ({e})",
                error=str(e),
            )

    def _evaluate(self, confidence: float, config: TriageConfig) -> Decision:
        confidence = float(confidence)
        if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
            raise DecisionError(f"Confidence {confidence!r} is outside [0, 1]")

        threshold = float(config.confidence_threshold)
        if math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
            raise DecisionError(f"Threshold {threshold!r} is outside [0, 1]")

        enabled = bool(config.auto_close_enabled)
        auto_closed = enabled and confidence >= threshold

        return Decision(
            auto_closed=auto_closed,
            confidence=confidence,
            threshold=threshold,
            auto_close_enabled=enabled,
            reasoning=AUTO_CLOSE_REASON if auto_closed else HANDOFF_REASON,
        )

    @staticmethod
    def _safe_float(value) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.0
        return value if math.isfinite(value) else 0.0
