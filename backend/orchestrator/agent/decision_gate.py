"""Confidence-threshold routing for classifier decisions."""
from dataclasses import dataclass, field
from enum import Enum


class RoutingVerdict(str, Enum):
    AUTO_EXECUTE = "AUTO_EXECUTE"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"
    REJECT = "REJECT"


@dataclass(frozen=True)
class DecisionThresholds:
    """Confidence boundaries for one organization.

    Attributes:
        auto_execute: Confidence at or above which actions run without review.
        require_approval: Confidence below which the input is rejected.
        priority_adjustments: Optional per-priority offsets applied to
            ``auto_execute``, e.g. ``{5: -0.05}`` to auto-run critical work sooner.
    """
    auto_execute: float = 0.85
    require_approval: float = 0.5
    priority_adjustments: dict[int, float] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.require_approval <= 1.0 or not 0.0 <= self.auto_execute <= 1.0:
            raise ValueError("Thresholds must be between 0 and 1")
        if self.require_approval > self.auto_execute:
            raise ValueError("require_approval threshold cannot exceed auto_execute threshold")

    def auto_execute_for(self, priority: int) -> float:
        adjusted = self.auto_execute + self.priority_adjustments.get(priority, 0.0)
        return max(self.require_approval, min(1.0, adjusted))


def route(
    confidence: float,
    priority: int,
    thresholds: DecisionThresholds,
    force_approval: bool = False,
) -> RoutingVerdict:
    """Map a decision's confidence to a routing verdict.

    Priority only matters when ``thresholds.priority_adjustments`` maps it.

    Args:
        confidence: Classifier confidence in [0, 1].
        priority: Task priority in [1, 5].
        thresholds: Organization thresholds.
        force_approval: Never auto-execute, regardless of confidence.

    Returns:
        AUTO_EXECUTE, REQUIRES_APPROVAL or REJECT.
    """
    if confidence < thresholds.require_approval:
        return RoutingVerdict.REJECT
    if confidence >= thresholds.auto_execute_for(priority) and not force_approval:
        return RoutingVerdict.AUTO_EXECUTE
    return RoutingVerdict.REQUIRES_APPROVAL
