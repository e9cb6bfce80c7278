"""Power-user engagement scoring."""

from dataclasses import dataclass
from typing import Optional

from tapidentity.config import settings

# score = taps*1 + tags*2 + batches*2 + lists*3 + items_added*1 + items_purchased*5
WEIGHT_TAPS = 1
WEIGHT_TAGS_TAPPED = 2
WEIGHT_BATCHES_TAPPED = 2
WEIGHT_LISTS_CREATED = 3
WEIGHT_ITEMS_ADDED = 1
WEIGHT_ITEMS_PURCHASED = 5


@dataclass(frozen=True)
class EngagementCounts:
    """One visitor's activity for one day."""

    taps: int = 0
    tags_tapped: int = 0
    batches_tapped: int = 0
    lists_created: int = 0
    items_added: int = 0
    items_purchased: int = 0


def engagement_score(counts: EngagementCounts) -> int:
    return (
        counts.taps * WEIGHT_TAPS
        + counts.tags_tapped * WEIGHT_TAGS_TAPPED
        + counts.batches_tapped * WEIGHT_BATCHES_TAPPED
        + counts.lists_created * WEIGHT_LISTS_CREATED
        + counts.items_added * WEIGHT_ITEMS_ADDED
        + counts.items_purchased * WEIGHT_ITEMS_PURCHASED
    )


def is_power_user(score: float, threshold: Optional[int] = None) -> bool:
    if threshold is None:
        threshold = settings.power_user_score_threshold
    return score >= threshold
