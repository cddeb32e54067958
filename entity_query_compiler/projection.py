# Copyright 2017-present Kensho Technologies, LLC.
"""Helpers splitting expanded branches of a query into a seed query and correlated branch queries.

The seed query selects the root rows. The path query reads the seed rows back through a script
source and exposes the columns identifying them. Each branch query joins its own source with the
query of its parent branch (the path query for first-level branches), and carries the keys of the
parent row it belongs to as $Key{n} columns.
"""
from typing import TYPE_CHECKING, Dict, List, Optional

from .exceptions import ConfigurationError, UnsupportedOperationError
from .global_utils import SYSTEM_COLUMN_PREFIX
from .path_tree import PathNode
from .query_plan import (
    Column,
    Join,
    JoinStatement,
    JoinType,
    ScriptSource,
    SelectQuery,
    Source,
    TableSource,
    UnionSource,
    find_available_column,
)


if TYPE_CHECKING:
    from .plan_builder import QueryBuilder  # noqa  # pylint: disable=cyclic-import


PATH_SOURCE_NAME = "Path"
PARENT_KEY_ALIAS_TEMPLATE = SYSTEM_COLUMN_PREFIX + "Key{}"
ORDER_ALIAS_TEMPLATE = SYSTEM_COLUMN_PREFIX + "Order{}"


def get_projection_alias_prefix(component_id: str) -> str:
    """Return the prefix of the aliases of the columns identifying rows of the node."""
    return SYSTEM_COLUMN_PREFIX + component_id.replace(".", "_") + "Key"


def get_projection_alias(component_id: str, index: int) -> str:
    """Return the alias of the index-th column identifying rows of the node."""
    return f"{get_projection_alias_prefix(component_id)}{index}"


def get_parent_key_alias(index: int) -> str:
    """Return the alias of the index-th parent key column of a branch query."""
    return PARENT_KEY_ALIAS_TEMPLATE.format(index)


class ProjectionHelper:
    """Default strategy for branch splitting, replaceable by executors with their own needs."""

    def locate_source(self, builder: "QueryBuilder", node: PathNode) -> Source:
        """Return the source of the node, which must be projectable."""
        source = builder.node_source(node)
        if isinstance(source, UnionSource):
            raise UnsupportedOperationError(
                f"Expanded queries over the polymorphic type {node.element_type} are not "
                f"supported."
            )
        return source

    def locate_columns(
        self,
        builder: "QueryBuilder",
        node: PathNode,
        source: Source,
        tree_node: Optional[PathNode] = None,
    ) -> List[Column]:
        """Return the columns identifying rows of the node, keys first.

        Args:
            builder: the builder owning the node.
            node: the node whose rows are identified.
            source: source of the node.
            tree_node: the node of the request's tree that the node stands for. Its expanded
                       children determine the extra columns their branch queries join on.
                       Defaults to the node itself.

        Returns:
            list of system column copies aliased after the component id of the tree node. The
            first columns are the keys of the node's type, in key order.
        """
        tree_node = tree_node or node
        metadata = builder.metadata
        key_names = metadata.keys(node.element_type)
        if not key_names:
            raise ConfigurationError(
                f"Type {node.element_type} has no keys, so the expanded members of "
                f"{tree_node.full_path or node.element_type} cannot be queried separately."
            )

        names = list(key_names)
        for child in tree_node.children:
            if not child.is_expanded:
                continue
            for left, _ in metadata.resolve_node_join(tree_node, child).column_pairs:
                if all(name.lower() != left.lower() for name in names):
                    names.append(left)

        columns = []
        for index, name in enumerate(names):
            column = find_available_column(source, name)
            if column is None:
                raise AssertionError(f"Source of node {node} unexpectedly has no column {name}.")
            columns.append(
                column.copy(
                    alias=get_projection_alias(tree_node.component_id, index),
                    member_name=column.member,
                    is_system=True,
                )
            )
        return columns

    def create_path_query(
        self, builder: "QueryBuilder", projection_columns: List[Column], seed: SelectQuery
    ) -> SelectQuery:
        """Return the query reading the identifying columns of the seed rows."""
        script = ScriptSource(
            name=PATH_SOURCE_NAME,
            alias=builder.context.next_alias(PATH_SOURCE_NAME),
            producer=seed,
            path=seed.path,
        )
        script.available_columns = [
            seed_column.expose(script)
            for seed_column in seed.all_columns
            if any(seed_column is column for column in projection_columns)
        ]
        path_query = SelectQuery(
            source=script,
            alias=builder.context.next_alias(PATH_SOURCE_NAME),
            path=seed.path,
            root_node=seed.root_node,
            distinct=True,
        )
        for column in script.available_columns:
            path_query.add_column(column)
        path_query.expose_columns()
        return path_query

    def align_columns_to_path(
        self, path_query: SelectQuery, projection_columns: List[Column]
    ) -> List[JoinStatement]:
        """Pair each identifying column of the seed with the column the path query exposes."""
        statements = []
        for column in projection_columns:
            path_column = find_available_column(path_query, column.alias)
            if path_column is None:
                raise AssertionError(
                    f"Path query {path_query.alias} does not expose the column {column.alias}."
                )
            statements.append(JoinStatement(column, path_column))
        return statements

    def _find_projected_column(
        self, parent_plan: SelectQuery, component_id: str, member: str
    ) -> Column:
        prefix = get_projection_alias_prefix(component_id)
        for column in parent_plan.expose_columns():
            if column.alias.startswith(prefix) and column.member.lower() == member.lower():
                return column
        raise AssertionError(
            f"Query {parent_plan.alias} does not expose the member {member} of node {component_id}."
        )

    def reconfigure_joins(self, builder: "QueryBuilder", query: SelectQuery) -> None:
        """Correlate every branch query with the query of its parent branch."""
        if query.path_query is None:
            raise AssertionError(f"Query {query.alias} has no path query to correlate with.")
        metadata = builder.metadata
        plans_by_component_id: Dict[str, SelectQuery] = {}

        for secondary in query.secondary_queries:
            node = secondary.root_node
            parent = node.parent if node is not None else None
            if node is None or parent is None:
                raise AssertionError(f"Branch query {secondary.alias} has no parent node.")
            if parent.is_root:
                parent_plan = query.path_query
            else:
                parent_plan = plans_by_component_id[parent.component_id]
            if secondary.source is None:
                raise AssertionError(f"Branch query {secondary.alias} has no source.")

            resolution = metadata.resolve_node_join(parent, node)
            parent_columns = [
                self._find_projected_column(parent_plan, parent.component_id, left)
                for left, _ in resolution.column_pairs
            ]
            child_columns: List[Column] = []
            for _, right in resolution.column_pairs:
                child_column = find_available_column(secondary.source, right)
                if child_column is None:
                    raise AssertionError(
                        f"Source of branch query {secondary.alias} has no column {right}."
                    )
                child_columns.append(child_column)

            intermediate = resolution.intermediate
            if intermediate is None:
                secondary.joins.append(
                    Join(
                        secondary.source,
                        parent_plan,
                        JoinType.INNER,
                        [
                            JoinStatement(child_column, parent_column)
                            for child_column, parent_column in zip(child_columns, parent_columns)
                        ],
                    )
                )
            else:
                link_table = TableSource(
                    name=intermediate.name,
                    alias=builder.context.next_alias(builder.template),
                    path=secondary.path,
                )
                left_link = Column(
                    intermediate.left_column,
                    intermediate.left_column,
                    source=link_table,
                    path=secondary.path,
                    is_system=True,
                )
                right_link = Column(
                    intermediate.right_column,
                    intermediate.right_column,
                    source=link_table,
                    path=secondary.path,
                    is_system=True,
                )
                link_table.available_columns = [left_link, right_link]
                secondary.joins.append(
                    Join(
                        secondary.source,
                        parent_plan,
                        JoinType.INNER,
                        [JoinStatement(child_columns[0], right_link)],
                        intermediate_table=link_table,
                        intermediate_statements=[JoinStatement(left_link, parent_columns[0])],
                    )
                )

            key_count = len(metadata.keys(parent.element_type))
            secondary.parent_key_columns = [
                secondary.add_column(
                    self._find_projected_column_by_index(parent_plan, parent, index).copy(
                        alias=get_parent_key_alias(index), member_name=None, is_system=True
                    )
                )
                for index in range(key_count)
            ]
            secondary.distinct = True
            self.fix_up_order_by(secondary)
            plans_by_component_id[node.component_id] = secondary

    def _find_projected_column_by_index(
        self, parent_plan: SelectQuery, parent: PathNode, index: int
    ) -> Column:
        alias = get_projection_alias(parent.component_id, index)
        column = find_available_column(parent_plan, alias)
        if column is None:
            raise AssertionError(f"Query {parent_plan.alias} does not expose the column {alias}.")
        return column

    def fix_sub_selects(self, builder: "QueryBuilder", query: SelectQuery) -> None:
        """Refresh the columns every parent plan exposes, now that all columns are in place."""
        plans: List[SelectQuery] = [query.path_query] if query.path_query is not None else []
        plans.extend(query.secondary_queries)
        for plan in plans:
            plan.available_columns = []
            exposed = {column.alias for column in plan.expose_columns()}
            for secondary in query.secondary_queries:
                for join in secondary.joins:
                    if join.target is not plan:
                        continue
                    for statement in join.statements + join.intermediate_statements:
                        for column in (statement.left, statement.right):
                            if column.source is plan and column.alias not in exposed:
                                raise AssertionError(
                                    f"Query {secondary.alias} joins on the column {column.alias}, "
                                    f"which query {plan.alias} does not expose."
                                )

    def fix_up_order_by(self, query: SelectQuery) -> None:
        """Select every ordering column of a distinct query, as required for SELECT DISTINCT."""
        if not query.distinct:
            return
        for index, ordering in enumerate(query.order_by):
            column = ordering.column
            if any(existing is column for existing in query.all_columns):
                continue
            query.add_column(
                column.copy(
                    alias=ORDER_ALIAS_TEMPLATE.format(index),
                    member_name=None,
                    is_system=True,
                )
            )

