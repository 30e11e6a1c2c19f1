"""
Confidence router.

Maps a classification confidence to a band and to one of three routes:
auto-accept, auto-reject, needs-review. Bands and thresholds are a table
taken from configuration:

    very_low  [0.0, 0.3)    needs review
    low       [0.3, 0.5)    needs review
    medium    [0.5, 0.7)    needs review
    high      [0.7, 0.9)    needs review (below auto-approve)
    very_high [0.9, 1.0]    auto-accept / auto-reject
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import ClassificationResult, Route

logger = logging.getLogger(__name__)

DEFAULT_BANDS = [
    {"name": "very_low", "lower": 0.0, "upper": 0.3},
    {"name": "low", "lower": 0.3, "upper": 0.5},
    {"name": "medium", "lower": 0.5, "upper": 0.7},
    {"name": "high", "lower": 0.7, "upper": 0.9},
    {"name": "very_high", "lower": 0.9, "upper": 1.0},
]

DEFAULT_RETENTION_DAYS = {"very_uncertain": 30, "uncertain": 14, "certain": 7}


@dataclass(frozen=True)
class ConfidenceBand:
    name: str
    lower: float
    upper: float


@dataclass(frozen=True)
class RoutingDecision:
    route: Route
    band: str
    confidence: float


class ConfidenceRouter:
    """
    Table-driven confidence policy.

    Usage:
        router = ConfidenceRouter(config["confidence"], config["review"])
        decision = router.route(result)
        if decision.route is Route.NEEDS_REVIEW:
            queue.enqueue(...)
    """

    def __init__(self, config: Optional[Dict] = None, review_config: Optional[Dict] = None):
        config = config or {}
        review_config = review_config or {}

        bands = config.get("bands") or DEFAULT_BANDS
        self.bands: List[ConfidenceBand] = sorted(
            (ConfidenceBand(b["name"], float(b["lower"]), float(b["upper"])) for b in bands),
            key=lambda b: b.lower,
        )
        self.needs_review_threshold = config.get("needs_review", 0.7)
        self.auto_approve_threshold = config.get("auto_approve", 0.9)
        if self.needs_review_threshold > self.auto_approve_threshold:
            raise ValueError("needs_review threshold must not exceed auto_approve")

        self.retention = {**DEFAULT_RETENTION_DAYS, **review_config.get("retention_days", {})}

    def band_for(self, confidence: float) -> str:
        """Name of the band containing `confidence`; the last band is closed above."""
        c = min(max(float(confidence), 0.0), 1.0)
        for band in self.bands:
            if band.lower <= c < band.upper:
                return band.name
        return self.bands[-1].name

    def needs_review(self, confidence: float) -> bool:
        """Strictly uncertain: below the needs-review threshold."""
        return confidence < self.needs_review_threshold

    def can_auto_approve(self, confidence: float) -> bool:
        return confidence >= self.auto_approve_threshold

    def route(self, result: ClassificationResult) -> RoutingDecision:
        if self.can_auto_approve(result.confidence):
            route = Route.AUTO_ACCEPT if result.is_job_related else Route.AUTO_REJECT
        else:
            route = Route.NEEDS_REVIEW
        return RoutingDecision(route=route, band=self.band_for(result.confidence),
                               confidence=result.confidence)

    def retention_days(self, confidence: float) -> int:
        """Review-entry lifetime: the less certain, the longer it is kept."""
        if confidence < 0.5:
            return int(self.retention["very_uncertain"])
        if confidence < self.needs_review_threshold:
            return int(self.retention["uncertain"])
        return int(self.retention["certain"])

    def to_dict(self) -> Dict:
        return {
            "bands": [b.__dict__ for b in self.bands],
            "needs_review": self.needs_review_threshold,
            "auto_approve": self.auto_approve_threshold,
            "retention_days": dict(self.retention),
        }
