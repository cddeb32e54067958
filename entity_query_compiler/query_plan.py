# Copyright 2017-present Kensho Technologies, LLC.
"""The flat relational plan emitted by the PlanBuilder and consumed by executors.

Sources form a tagged union switched on with isinstance or on their `kind`:
- TableSource: a stored table;
- SelectQuery: a nested plan, e.g. the inner joins across a table-per-type inheritance chain;
- UnionSource: one SelectQuery per concrete subtype, aligned to a common alias list;
- ScriptSource: rows produced by running another plan first, e.g. the seed rows of a split plan.

Plan objects compare by identity: columns and joins refer to the exact sources they belong to.
"""
from dataclasses import dataclass, field, replace
from enum import Enum, unique
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from .exceptions import UnsupportedOperationError
from .expressions import Expression
from .request import AggregateKind


if TYPE_CHECKING:
    from .path_tree import PathNode  # noqa  # pylint: disable=cyclic-import


@unique
class SourceKind(Enum):
    TABLE = "table"
    SELECT = "select"
    UNION = "union"
    SCRIPT = "script"


@unique
class JoinType(Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    INNER_MERGE = "inner_merge"


@dataclass(frozen=True)
class LiteralValue:
    """A constant column value, e.g. a discriminator or a NULL union placeholder."""

    value: Any


@dataclass(frozen=True, eq=False)
class AggregateReference:
    """An aggregate computed over one or more columns of the query."""

    kind: AggregateKind
    expression: Optional[Expression]  # Bound expression, or None for a row count.
    columns: Tuple["Column", ...]


ColumnExpression = Union[LiteralValue, AggregateReference]


@dataclass(eq=False)
class Column:
    """A column of a relational source, or a computed output column of a query."""

    name: str  # Storage-side name, or the alias exposed by a nested source.
    alias: str  # Output name, unique within a query.
    source: Optional["Source"] = None
    element_type: Optional[Type] = None
    path: str = ""  # Full path of the node whose entity the value belongs to.
    is_key: bool = False
    nullable: bool = True
    size: Optional[int] = None
    computed: bool = False
    declaring_type: Optional[str] = None
    member_name: Optional[str] = None  # Entity member to materialize into, if not the alias.
    is_system: bool = False
    is_supplemental: bool = False
    expression: Optional[ColumnExpression] = None

    @property
    def member(self) -> str:
        """Return the name of the entity member this column is materialized into."""
        return self.member_name or self.alias

    @property
    def aggregate_ref(self) -> Optional[AggregateReference]:
        """Return the aggregate this column computes, if any."""
        if isinstance(self.expression, AggregateReference):
            return self.expression
        return None

    @property
    def literal(self) -> Optional[LiteralValue]:
        """Return the constant value of this column, if any."""
        if isinstance(self.expression, LiteralValue):
            return self.expression
        return None

    def copy(self, **changes: Any) -> "Column":
        """Return a copy of the column with the given fields replaced."""
        return replace(self, **changes)

    def expose(self, source: "Source", alias: Optional[str] = None) -> "Column":
        """Return the column as seen from outside the nested source that computes it."""
        return replace(
            self,
            name=self.alias,
            alias=alias or self.alias,
            source=source,
            expression=None,
        )


@dataclass(eq=False)
class TableSource:
    name: str
    alias: str
    path: str = ""
    available_columns: List[Column] = field(default_factory=list)

    kind: ClassVar[SourceKind] = SourceKind.TABLE


@dataclass(eq=False)
class JoinStatement:
    """One equality pair of a join condition."""

    left: Column
    right: Column


@dataclass(eq=False)
class Join:
    """An equi-join from an already present source to a target source.

    For many-to-many relations, the statements join the source to the intermediate table and the
    intermediate statements join the intermediate table to the target.
    """

    source: "Source"
    target: "Source"
    join_type: JoinType
    statements: List[JoinStatement]
    intermediate_table: Optional[TableSource] = None
    intermediate_statements: List[JoinStatement] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate fields."""
        if not self.statements:
            raise AssertionError(f"A join to {self.target} must have at least one statement.")
        if (self.intermediate_table is None) != (not self.intermediate_statements):
            raise AssertionError(
                f"Intermediate statements must be given if and only if an intermediate table is "
                f"present: {self.intermediate_table} {self.intermediate_statements}"
            )

    def copy(self, join_type: Optional[JoinType] = None) -> "Join":
        """Return a shallow copy of the join, optionally with a different join type."""
        return replace(
            self,
            join_type=join_type or self.join_type,
            statements=list(self.statements),
            intermediate_statements=list(self.intermediate_statements),
        )


@dataclass(eq=False)
class Ordering:
    column: Column
    descending: bool = False


@dataclass(eq=False)
class GroupingSet:
    """A single grouped column, or several columns grouped with rollup."""

    columns: List[Column]
    rollup: bool = False


@dataclass(eq=False)
class GroupByClause:
    groupings: List[GroupingSet] = field(default_factory=list)

    @property
    def columns(self) -> List[Column]:
        """Return every grouped column, in grouping order."""
        return [column for grouping in self.groupings for column in grouping.columns]


@dataclass(eq=False)
class SelectQuery:
    """A flat relational query, the unit of work handed to an executor.

    When expand branches are split out, the root query only describes the result shape: the seed
    rows come from insert_query, the path_query exposes the seed keys, and each branch is one of
    the secondary_queries.
    """

    source: Optional["Source"] = None
    alias: str = ""
    path: str = ""
    all_columns: List[Column] = field(default_factory=list)
    joins: List[Join] = field(default_factory=list)
    filter: Optional[Expression] = None
    group_by: Optional[GroupByClause] = None
    order_by: List[Ordering] = field(default_factory=list)
    top: Optional[int] = None
    skip: Optional[int] = None
    distinct: bool = False
    root_node: Optional["PathNode"] = None

    insert_query: Optional["SelectQuery"] = None
    path_query: Optional["SelectQuery"] = None
    path_subselect: List[JoinStatement] = field(default_factory=list)
    secondary_queries: List["SelectQuery"] = field(default_factory=list)
    key_columns: List[Column] = field(default_factory=list)
    parent_key_columns: List[Column] = field(default_factory=list)

    # Columns of this query as seen by an enclosing query, once it is used as a source.
    available_columns: List[Column] = field(default_factory=list)

    kind: ClassVar[SourceKind] = SourceKind.SELECT

    @property
    def columns(self) -> List[Column]:
        """Return the public output columns, without the planner's own bookkeeping columns."""
        return [column for column in self.all_columns if not column.is_system]

    @property
    def is_aggregate_query(self) -> bool:
        """Return True if the query groups rows or computes any aggregate."""
        return self.group_by is not None or any(
            column.aggregate_ref is not None and column.aggregate_ref.kind != AggregateKind.NONE
            for column in self.all_columns
        )

    @property
    def has_projection(self) -> bool:
        """Return True if the expand branches of this query were split into secondary queries."""
        return self.insert_query is not None

    def find_column(self, alias: str) -> Optional[Column]:
        """Return the output column with the given alias, if any."""
        for column in self.all_columns:
            if column.alias == alias:
                return column
        return None

    def add_column(self, column: Column) -> Column:
        """Append an output column, ensuring aliases stay unique within the query."""
        if self.find_column(column.alias) is not None:
            raise AssertionError(f"Duplicate column alias {column.alias} in query {self.alias}.")
        self.all_columns.append(column)
        return column

    def expose_columns(self) -> List[Column]:
        """Make this query usable as a source, returning the columns it offers outer queries."""
        if not self.available_columns:
            self.available_columns = [column.expose(self) for column in self.all_columns]
        return self.available_columns


@dataclass(eq=False)
class UnionSource:
    """The rows of several subtype queries, concatenated under one abstract supertype."""

    alias: str
    path: str = ""
    queries: List[SelectQuery] = field(default_factory=list)
    available_columns: List[Column] = field(default_factory=list)

    kind: ClassVar[SourceKind] = SourceKind.UNION

    def add_query(self, query: SelectQuery) -> None:
        """Add a subtype query to the union."""
        if query.path_query is not None:
            raise UnsupportedOperationError(
                f"Cannot add the projected query {query.alias} to the union {self.alias}."
            )
        self.queries.append(query)

    def align(self) -> None:
        """Pad every query with NULL placeholders so all share one ordered alias list."""
        first_seen: Dict[str, Column] = {}
        for query in self.queries:
            for column in query.all_columns:
                first_seen.setdefault(column.alias, column)

        for query in self.queries:
            present = {column.alias for column in query.all_columns}
            for alias, template in first_seen.items():
                if alias not in present:
                    query.all_columns.append(
                        Column(
                            name=alias,
                            alias=alias,
                            element_type=template.element_type,
                            path=template.path,
                            is_key=template.is_key,
                            declaring_type=template.declaring_type,
                            expression=LiteralValue(None),
                        )
                    )
            query.all_columns.sort(key=lambda column: column.alias)

        self.available_columns = (
            [column.expose(self) for column in self.queries[0].all_columns] if self.queries else []
        )


@dataclass(eq=False)
class ScriptSource:
    """Rows produced by executing the producer query ahead of the queries reading them."""

    name: str
    alias: str
    producer: SelectQuery
    path: str = ""
    available_columns: List[Column] = field(default_factory=list)

    kind: ClassVar[SourceKind] = SourceKind.SCRIPT


Source = Union[TableSource, SelectQuery, UnionSource, ScriptSource]

# The PlanBuilder output is a select query.
QueryPlan = SelectQuery


def find_available_column(source: Source, alias: str) -> Optional[Column]:
    """Return the column the source offers under the given alias, matched case-insensitively."""
    if isinstance(source, SelectQuery):
        candidates = source.expose_columns()
    elif isinstance(source, (TableSource, UnionSource, ScriptSource)):
        candidates = source.available_columns
    else:
        raise AssertionError(f"Unknown source type {source}: {type(source)}")

    lowered = alias.lower()
    for column in candidates:
        if column.alias.lower() == lowered:
            return column
    return None
