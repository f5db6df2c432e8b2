"""Cost-aware batching of work items.

Items are split into complexity tiers, each tier sorted by descending
priority and chunked with its own batch size. Complex batches come first,
then medium, then simple: if a job runs out of time budget, the riskiest
and most valuable items have already been attempted.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from complaint_pipeline.jobs.models import WorkItem

T = TypeVar("T")

SMALL_TEXT_THRESHOLD = 500
LARGE_TEXT_THRESHOLD = 3000
LONG_TEXT_BONUS_THRESHOLD = 1000
COMPLEXITY_MARKERS = ("code", "json", "xml", "html", "css", "javascript", "python", "sql")
COMPLAINT_TERMS = ("frustrated", "annoying", "broken", "hate", "terrible", "awful", "worst")

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_BRACKETS = re.compile(r"[{}\[\]()]")


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


TIER_ORDER = (Complexity.COMPLEX, Complexity.MEDIUM, Complexity.SIMPLE)


@dataclass(frozen=True)
class Assessment:
    complexity: Complexity
    priority: float


@dataclass
class Batch(Generic[T]):
    index: int
    tier: Complexity
    items: List[T]

    def __len__(self) -> int:
        return len(self.items)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def assess_work_item(item: WorkItem, now: Optional[datetime] = None) -> Assessment:
    """Cheap local estimate of how hard and how valuable an item is."""
    text = item.text.lower()
    length = len(text)

    has_markers = any(marker in text for marker in COMPLEXITY_MARKERS)
    has_long_words = any(len(word) > 20 for word in text.split())
    if length > LARGE_TEXT_THRESHOLD or has_markers or has_long_words:
        complexity = Complexity.COMPLEX
    elif (
        length > SMALL_TEXT_THRESHOLD
        or _NON_ASCII.search(text)
        or len(_BRACKETS.findall(text)) > 5
    ):
        complexity = Complexity.MEDIUM
    else:
        complexity = Complexity.SIMPLE

    priority = 0.0
    if item.created_at is not None:
        now = now or datetime.now(timezone.utc)
        age_days = (_as_utc(now) - _as_utc(item.created_at)).total_seconds() / 86400
        priority += max(0.0, 100 - age_days * 10)
    if item.sentiment is not None:
        priority += abs(item.sentiment) * 50
    priority += 20 * sum(1 for term in COMPLAINT_TERMS if term in text)
    if length > LONG_TEXT_BONUS_THRESHOLD:
        priority += 10

    return Assessment(complexity=complexity, priority=priority)


class BatchPlanner:
    """Partitions a page of items into ordered batches."""

    def __init__(
        self,
        complex_batch_size: int = 5,
        medium_batch_size: int = 10,
        simple_batch_size: int = 15,
        assess: Callable[[WorkItem], Assessment] = assess_work_item,
    ):
        sizes = {
            Complexity.COMPLEX: complex_batch_size,
            Complexity.MEDIUM: medium_batch_size,
            Complexity.SIMPLE: simple_batch_size,
        }
        for tier, size in sizes.items():
            if size < 1:
                raise ValueError(f"{tier.value} batch size must be at least 1")
        self.batch_sizes: Dict[Complexity, int] = sizes
        self._assess = assess

    def plan(self, items: Sequence[WorkItem]) -> List[Batch[WorkItem]]:
        tiers: Dict[Complexity, List[Tuple[float, int, WorkItem]]] = {
            tier: [] for tier in TIER_ORDER
        }
        for position, item in enumerate(items):
            assessment = self._assess(item)
            tiers[assessment.complexity].append((assessment.priority, position, item))

        batches: List[Batch[WorkItem]] = []
        for tier in TIER_ORDER:
            # Highest priority first; ties keep fetch order.
            ranked = sorted(tiers[tier], key=lambda entry: (-entry[0], entry[1]))
            size = self.batch_sizes[tier]
            for start in range(0, len(ranked), size):
                chunk = [entry[2] for entry in ranked[start:start + size]]
                batches.append(Batch(index=len(batches), tier=tier, items=chunk))
        return batches
