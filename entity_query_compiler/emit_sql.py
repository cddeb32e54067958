# Copyright 2018-present Kensho Technologies, LLC.
"""Render a QueryPlan into an executable SQLAlchemy Core query."""
import operator
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import sqlalchemy
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.functions import func
from sqlalchemy.sql.selectable import FromClause, Select

from .exceptions import UnsupportedOperationError
from .expressions import (
    AnyOrAll,
    Arithmetic,
    ArithmeticOperator,
    Comparison,
    ComparisonOperator,
    Conjunction,
    Expression,
    FunctionCall,
    InList,
    IsNull,
    Literal,
    LogicalOperator,
    Negation,
    PropertyReference,
    Quantifier,
)
from .query_plan import (
    AggregateReference,
    Column,
    Join,
    JoinType,
    ScriptSource,
    SelectQuery,
    Source,
    TableSource,
    UnionSource,
)
from .request import AggregateKind


_COMPARISON_OPERATORS: Mapping[ComparisonOperator, Callable[[Any, Any], Any]] = MappingProxyType(
    {
        ComparisonOperator.EQ: operator.eq,
        ComparisonOperator.NE: operator.ne,
        ComparisonOperator.LT: operator.lt,
        ComparisonOperator.LE: operator.le,
        ComparisonOperator.GT: operator.gt,
        ComparisonOperator.GE: operator.ge,
    }
)

_ARITHMETIC_OPERATORS: Mapping[ArithmeticOperator, Callable[[Any, Any], Any]] = MappingProxyType(
    {
        ArithmeticOperator.ADD: operator.add,
        ArithmeticOperator.SUB: operator.sub,
        ArithmeticOperator.MUL: operator.mul,
        ArithmeticOperator.DIV: operator.truediv,
        ArithmeticOperator.MOD: operator.mod,
    }
)

_AGGREGATE_FUNCTIONS: Mapping[AggregateKind, Callable[[Any], Any]] = MappingProxyType(
    {
        AggregateKind.SUM: func.sum,
        AggregateKind.MIN: func.min,
        AggregateKind.MAX: func.max,
        AggregateKind.AVERAGE: func.avg,
        AggregateKind.COUNT: func.count,
        AggregateKind.COUNT_DISTINCT: lambda argument: func.count(sqlalchemy.distinct(argument)),
    }
)


def _split_table_name(name: str) -> Tuple[Optional[str], str]:
    """Split a schema-qualified table name into its schema and table names."""
    if "." in name:
        schema, table_name = name.rsplit(".", 1)
        return schema, table_name
    return None, name


class _RenderContext:
    """Renders the sources of one plan, each exactly once."""

    def __init__(self) -> None:
        """Create an empty context."""
        self._from_clauses: Dict[int, FromClause] = {}

    def from_clause(self, source: Source) -> FromClause:
        """Return the aliased SQLAlchemy selectable of the source."""
        rendered = self._from_clauses.get(id(source))
        if rendered is not None:
            return rendered

        if isinstance(source, TableSource):
            schema, table_name = _split_table_name(source.name)
            table = sqlalchemy.table(
                table_name,
                *(
                    sqlalchemy.column(column.name)
                    for column in source.available_columns
                    if column.expression is None
                ),
                schema=schema,
            )
            rendered = table.alias(source.alias)
        elif isinstance(source, SelectQuery):
            rendered = self.select(source).subquery(source.alias)
        elif isinstance(source, UnionSource):
            rendered = sqlalchemy.union_all(
                *(self.select(query) for query in source.queries)
            ).subquery(source.alias)
        elif isinstance(source, ScriptSource):
            rendered = self.select(source.producer).cte(source.alias)
        else:
            raise AssertionError(f"Unknown source type {source}: {type(source)}")

        self._from_clauses[id(source)] = rendered
        return rendered

    def column(self, column: Column) -> ColumnElement:
        """Return the SQLAlchemy expression computing the column."""
        if column.literal is not None:
            if column.literal.value is None:
                return sqlalchemy.null()
            return sqlalchemy.literal(column.literal.value)
        aggregate = column.aggregate_ref
        if aggregate is not None:
            return self.aggregate(aggregate)
        if column.source is None:
            raise AssertionError(f"Column {column.alias} has neither a source nor an expression.")
        return self.from_clause(column.source).c[column.name]

    def aggregate(self, aggregate: AggregateReference) -> ColumnElement:
        """Return the SQLAlchemy expression computing the aggregate."""
        if aggregate.expression is None:
            if aggregate.kind != AggregateKind.COUNT:
                raise AssertionError(f"Only counts may omit their expression, got {aggregate}.")
            return func.count()
        argument = self.expression(aggregate.expression)
        if aggregate.kind == AggregateKind.NONE:
            return argument
        aggregate_function = _AGGREGATE_FUNCTIONS.get(aggregate.kind)
        if aggregate_function is None:
            raise AssertionError(f"Unknown aggregate kind {aggregate.kind}: {type(aggregate.kind)}")
        return aggregate_function(argument)

    def expression(self, expression: Expression) -> Any:
        """Return the SQLAlchemy expression of a bound filter or scalar expression."""
        if isinstance(expression, PropertyReference):
            if expression.column is None:
                raise AssertionError(f"Property reference {expression.path} was never bound.")
            return self.column(expression.column)
        elif isinstance(expression, Literal):
            return sqlalchemy.literal(expression.value)
        elif isinstance(expression, Comparison):
            return self._comparison(expression)
        elif isinstance(expression, InList):
            return self.expression(expression.operand).in_(list(expression.values))
        elif isinstance(expression, IsNull):
            operand = self.expression(expression.operand)
            return operand.is_not(None) if expression.negated else operand.is_(None)
        elif isinstance(expression, Conjunction):
            operands = [self.expression(operand) for operand in expression.operands]
            if expression.operator == LogicalOperator.AND:
                return sqlalchemy.and_(*operands)
            elif expression.operator == LogicalOperator.OR:
                return sqlalchemy.or_(*operands)
            raise AssertionError(
                f"Unknown logical operator {expression.operator}: {type(expression.operator)}"
            )
        elif isinstance(expression, Negation):
            return sqlalchemy.not_(self.expression(expression.operand))
        elif isinstance(expression, FunctionCall):
            return self._function_call(expression)
        elif isinstance(expression, Arithmetic):
            return _ARITHMETIC_OPERATORS[expression.operator](
                self.expression(expression.left), self.expression(expression.right)
            )
        elif isinstance(expression, AnyOrAll):
            return self._any_or_all(expression)
        else:
            raise AssertionError(f"Unknown expression type {expression}: {type(expression)}")

    def _comparison(self, comparison: Comparison) -> Any:
        for left, right in (
            (comparison.left, comparison.right),
            (comparison.right, comparison.left),
        ):
            if isinstance(right, Literal) and right.value is None:
                # SQL comparisons with NULL are never true, use IS (NOT) NULL instead.
                if comparison.operator == ComparisonOperator.EQ:
                    return self.expression(left).is_(None)
                elif comparison.operator == ComparisonOperator.NE:
                    return self.expression(left).is_not(None)
        return _COMPARISON_OPERATORS[comparison.operator](
            self.expression(comparison.left), self.expression(comparison.right)
        )

    def _function_call(self, call: FunctionCall) -> Any:
        arguments = [self.expression(argument) for argument in call.arguments]
        if call.name in ("contains", "startswith", "endswith"):
            if len(arguments) != 2:
                raise AssertionError(f"Function {call.name} takes two arguments, got {arguments}.")
            return getattr(arguments[0], call.name)(arguments[1])
        elif call.name == "tolower":
            return func.lower(*arguments)
        elif call.name == "toupper":
            return func.upper(*arguments)
        elif call.name == "length":
            return func.length(*arguments)
        raise AssertionError(f"Unknown function {call.name}.")

    def _any_or_all(self, predicate: AnyOrAll) -> Any:
        """Render the predicate as a correlated EXISTS subselect over its node's source.

        ANY keeps the rows with at least one matching member. ALL keeps the rows without any
        member failing the predicate, which includes rows without members.
        """
        join = predicate.join
        if join is None:
            raise AssertionError(f"Quantified predicate {predicate} was never bound to a join.")
        if predicate.quantifier == Quantifier.ALL and predicate.predicate is None:
            return sqlalchemy.true()

        subselect_from = self.from_clause(join.target)
        conditions = []
        if join.intermediate_table is not None:
            subselect_from = self.from_clause(join.intermediate_table).join(
                subselect_from, self._on_clause(join.intermediate_statements)
            )
        conditions.append(self._on_clause(join.statements))
        for inner_join in predicate.inner_joins:
            subselect_from = self._join(subselect_from, inner_join)

        if predicate.predicate is not None:
            inner_predicate = self.expression(predicate.predicate)
            if predicate.quantifier == Quantifier.ALL:
                conditions.append(sqlalchemy.not_(inner_predicate))
            else:
                conditions.append(inner_predicate)

        exists = (
            sqlalchemy.select(sqlalchemy.literal_column("1"))
            .select_from(subselect_from)
            .where(sqlalchemy.and_(*conditions))
            .exists()
        )
        if predicate.quantifier == Quantifier.ALL:
            return sqlalchemy.not_(exists)
        return exists

    def _on_clause(self, statements: List[Any]) -> Any:
        return sqlalchemy.and_(
            *(
                self.column(statement.left) == self.column(statement.right)
                for statement in statements
            )
        )

    def _join(self, from_clause: FromClause, join: Join) -> FromClause:
        if join.join_type == JoinType.RIGHT:
            raise UnsupportedOperationError(
                f"Right joins are not supported, got a right join to {join.target}."
            )
        is_outer = join.join_type == JoinType.LEFT
        target = self.from_clause(join.target)
        if join.intermediate_table is None:
            return from_clause.join(target, self._on_clause(join.statements), isouter=is_outer)

        link_table = self.from_clause(join.intermediate_table)
        return from_clause.join(
            link_table, self._on_clause(join.statements), isouter=is_outer
        ).join(target, self._on_clause(join.intermediate_statements), isouter=is_outer)

    def select(self, query: SelectQuery) -> Select:
        """Return the SQLAlchemy select of the query."""
        if query.source is None:
            raise AssertionError(f"Query {query.alias} has no source.")
        from_clause = self.from_clause(query.source)
        for join in query.joins:
            from_clause = self._join(from_clause, join)

        statement = sqlalchemy.select(
            *(self.column(column).label(column.alias) for column in query.all_columns)
        ).select_from(from_clause)
        if query.filter is not None:
            statement = statement.where(self.expression(query.filter))
        if query.group_by is not None:
            group_by_clauses = []
            for grouping in query.group_by.groupings:
                columns = [self.column(column) for column in grouping.columns]
                if grouping.rollup:
                    group_by_clauses.append(func.rollup(*columns))
                else:
                    group_by_clauses.extend(columns)
            statement = statement.group_by(*group_by_clauses)
        if query.order_by:
            statement = statement.order_by(
                *(
                    self.column(ordering.column).desc()
                    if ordering.descending
                    else self.column(ordering.column).asc()
                    for ordering in query.order_by
                )
            )
        if query.distinct:
            statement = statement.distinct()
        if query.top is not None:
            statement = statement.limit(query.top)
        if query.skip:
            statement = statement.offset(query.skip)
        return statement


def emit_query(plan: SelectQuery) -> Select:
    """Return the SQLAlchemy query selecting the root rows of the plan.

    For plans with split branches, this is the seed query.
    """
    if plan.insert_query is not None:
        return _RenderContext().select(plan.insert_query)
    return _RenderContext().select(plan)


def emit_secondary_queries(plan: SelectQuery) -> Dict[str, Select]:
    """Return the SQLAlchemy query of each branch of the plan, by component id of the branch."""
    queries = {}
    for secondary in plan.secondary_queries:
        if secondary.root_node is None:
            raise AssertionError(f"Branch query {secondary.alias} has no root node.")
        queries[secondary.root_node.component_id] = _RenderContext().select(secondary)
    return queries


def emit_count_query(plan: SelectQuery, count_expression: Optional[Any] = None) -> Select:
    """Return the SQLAlchemy query counting the root rows of the plan."""
    if count_expression is None:
        count_expression = func.count()
    root_rows = emit_query(plan).subquery("Count")
    return sqlalchemy.select(count_expression).select_from(root_rows)
