# Copyright 2017-present Kensho Technologies, LLC.
from dataclasses import dataclass
from typing import Callable, Optional

from .query_plan import JoinType, SelectQuery


@dataclass(frozen=True)
class PlanBuilderSettings:
    """Options applied to every plan built by a PlanBuilder."""

    # Join type of joins emitted for navigation steps, except expanded ones which are left joins.
    default_join_type: JoinType = JoinType.INNER

    # Source aliases are the template followed by a counter shared by the whole plan.
    alias_template: str = "Alias"
    top_template: str = "Top"
    skip_template: str = "Skip"

    # Emulate skip with a self-join against the first rows, for backends lacking OFFSET.
    use_join_for_skip: bool = False

    # Applied to every finished plan, e.g. to add tenant filters or hints.
    query_processor: Optional[Callable[[SelectQuery], SelectQuery]] = None
