"""
Size Governor
=============

Keeps a dataset's category list under the byte budget by accepting the
longest prefix (optionally after a priority sort) whose serialized size fits.
The size is the exact orjson encoding of the list, brackets and separators
included, so a governed list never serializes above the budget.
"""

import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from core_infrastructure.config_manager import get_pipeline_config
from core_infrastructure.models import Category, serialized_size
from core_infrastructure.observability import CATEGORIES_TRUNCATED

logger = structlog.get_logger(__name__)

# "[" + "]"
_LIST_OVERHEAD = 2


@dataclass
class GovernResult:
    categories: List[Category]
    excluded: List[str] = field(default_factory=list)
    size_bytes: int = _LIST_OVERHEAD
    budget_bytes: int = 0

    @property
    def truncated(self) -> bool:
        return bool(self.excluded)


class SizeGovernor:
    def __init__(self, budget_bytes: Optional[int] = None):
        self.budget_bytes = budget_bytes or get_pipeline_config().max_payload_bytes

    def govern(self, categories: List[Category],
               priority: Optional[Callable[[Category], Any]] = None,
               budget_bytes: Optional[int] = None) -> GovernResult:
        """
        Args:
            categories: merged category list
            priority: optional sort key; categories are ordered ascending by it
                      (stable) before the prefix is taken
            budget_bytes: overrides the configured budget for this call
        """
        budget = budget_bytes or self.budget_bytes
        ordered = sorted(categories, key=priority) if priority else list(categories)

        accepted: List[Category] = []
        total = _LIST_OVERHEAD
        for index, category in enumerate(ordered):
            size = serialized_size(category) + (1 if accepted else 0)
            if total + size > budget:
                excluded = [c.name for c in ordered[index:]]
                CATEGORIES_TRUNCATED.inc(len(excluded))
                logger.warning("categories_truncated",
                               excluded=excluded,
                               kept=len(accepted),
                               size_bytes=total,
                               budget_bytes=budget)
                return GovernResult(accepted, excluded, total, budget)
            accepted.append(category)
            total += size

        return GovernResult(accepted, [], total, budget)
