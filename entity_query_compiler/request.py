# Copyright 2017-present Kensho Technologies, LLC.
"""The parsed, protocol-independent description of a single hierarchical query."""
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Any, Mapping, Optional, Tuple

from .exceptions import ConfigurationError
from .expressions import Expression, PropertyReference


@unique
class AggregateKind(Enum):
    NONE = "none"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    AVERAGE = "average"
    COUNT = "count"
    COUNT_DISTINCT = "countdistinct"


@unique
class GroupingKind(Enum):
    NONE = "none"
    ROLLUP = "rollup"


@dataclass(frozen=True)
class OrderBy:
    name: str  # Property path, or the alias of an aggregate.
    descending: bool = False


@dataclass(frozen=True)
class Grouping:
    """One grouping item: a single property, or several properties rolled up together."""

    properties: Tuple[str, ...]
    kind: GroupingKind = GroupingKind.NONE


@dataclass(frozen=True)
class Aggregate:
    """An aggregate output column, e.g. "Price with sum as Total".

    The expression is None only for a plain row count.
    """

    kind: AggregateKind
    expression: Optional[Expression] = None
    alias: Optional[str] = None

    @property
    def property_reference(self) -> Optional[PropertyReference]:
        """Return the referenced property if the aggregate is over exactly one property."""
        if isinstance(self.expression, PropertyReference):
            return self.expression
        return None


@dataclass(frozen=True)
class Expand:
    """A navigation to include in the output, with its own nested expansions and paging."""

    name: str
    children: Tuple["Expand", ...] = ()
    top: Optional[int] = None
    skip: Optional[int] = None
    orderings: Tuple[OrderBy, ...] = ()
    selects: Tuple[str, ...] = ()
    filter: Optional[Expression] = None


@dataclass(frozen=True)
class KeySegment:
    """A key predicate on an ancestor entity, e.g. the Customers(5) in Customers(5)/Orders.

    The ancestor type declares the navigation named member, leading to the next segment (or to
    the queried type, for the first segment).
    """

    entity_type: str
    member: str
    keys: Mapping[str, Any]


@dataclass(frozen=True)
class QueryRequest:
    """Everything needed to plan one query against a root entity type."""

    filter: Optional[Expression] = None
    # Ordered from the nearest ancestor outwards.
    argument_path: Tuple[KeySegment, ...] = ()
    selects: Tuple[str, ...] = ()
    orderings: Tuple[OrderBy, ...] = ()
    groupings: Tuple[Grouping, ...] = ()
    aggregates: Tuple[Aggregate, ...] = ()
    expand: Tuple[Expand, ...] = ()
    top: Optional[int] = None
    skip: Optional[int] = None
    # Opaque to the planner, handed through to the executor.
    timeout: Optional[float] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Validate fields."""
        for name, value in (("top", self.top), ("skip", self.skip)):
            if value is not None and value < 0:
                raise ConfigurationError(f"Expected a non-negative {name}, got {value}.")

    @property
    def is_aggregate_query(self) -> bool:
        """Return True if the request groups rows or computes aggregates."""
        return bool(self.groupings) or any(
            aggregate.kind != AggregateKind.NONE for aggregate in self.aggregates
        )
