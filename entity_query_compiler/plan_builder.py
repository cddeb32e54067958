# Copyright 2017-present Kensho Technologies, LLC.
"""Turn a hierarchical QueryRequest into a flat relational QueryPlan."""
import copy
from dataclasses import replace
import itertools
import logging
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Set, Tuple

from funcy import first

from .exceptions import ConfigurationError, DataInconsistencyError, UnsupportedOperationError
from .expressions import (
    AnyOrAll,
    Comparison,
    ComparisonOperator,
    Expression,
    IsNull,
    Literal,
    PropertyReference,
    combine_with_and,
    get_child_expressions,
    iter_property_references,
)
from .global_utils import (
    TYPE_NAME_COLUMN,
    get_only_element_from_collection,
    join_path,
    split_path,
    split_property_path,
)
from .path_tree import PathNode, PathTree
from .projection import ProjectionHelper
from .query_plan import (
    AggregateReference,
    Column,
    GroupByClause,
    GroupingSet,
    Join,
    JoinStatement,
    JoinType,
    LiteralValue,
    Ordering,
    SelectQuery,
    Source,
    TableSource,
    UnionSource,
    find_available_column,
)
from .request import AggregateKind, Expand, GroupingKind, OrderBy, QueryRequest
from .schema.type_metadata import TypeMetadata
from .settings import PlanBuilderSettings


if TYPE_CHECKING:
    from .executor import Executor  # noqa  # pylint: disable=cyclic-import


logger = logging.getLogger(__name__)


class PlanContext:
    """State shared by every query built for one request: metadata, settings and alias counter."""

    def __init__(
        self,
        metadata: TypeMetadata,
        settings: PlanBuilderSettings,
        projection_helper: ProjectionHelper,
    ) -> None:
        """Create the context of a single plan."""
        self.metadata = metadata
        self.settings = settings
        self.projection_helper = projection_helper
        self._alias_counter = itertools.count()

    def next_alias(self, template: str) -> str:
        """Return a source alias that is unique within the plan."""
        return f"{template}{next(self._alias_counter)}"

    def create_source(self, type_name: str, path: str, template: str) -> Source:
        """Create the source holding the rows of the type.

        A type with subtypes becomes a union with one query per concrete subtype. Otherwise, the
        tables along the inheritance chain of the type are inner joined on the key columns.
        """
        if self.metadata.subtypes(type_name):
            union = UnionSource(alias=self.next_alias(template), path=path)
            for subtype in self.metadata.concrete_subtypes(type_name):
                union.add_query(self._build_sub_select(subtype, path, template, force_select=True))
            if not union.queries:
                raise ConfigurationError(f"Type {type_name} has no concrete subtypes to query.")
            union.align()
            return union
        return self._build_sub_select(type_name, path, template)

    def _build_sub_select(
        self, type_name: str, path: str, template: str, force_select: bool = False
    ) -> Source:
        metadata = self.metadata
        tabled_types = [
            chain_type
            for chain_type in metadata.base_chain(type_name)
            if metadata.descriptor(chain_type).table_name is not None
        ]
        if not tabled_types:
            raise ConfigurationError(f"Type {type_name} is not stored in any table.")

        if len(tabled_types) == 1 and not force_select:
            table = TableSource(
                name=metadata.descriptor(type_name).table_name or "",
                alias=self.next_alias(template),
                path=path,
            )
            table.available_columns = metadata.create_columns(type_name, table, path)
            return table

        tables: Dict[str, TableSource] = {}
        for index, chain_type in enumerate(tabled_types):
            table = TableSource(
                name=metadata.descriptor(chain_type).table_name or "",
                alias=f"Inner{index}",
                path=path,
            )
            table.available_columns = [
                column
                for column in metadata.create_columns(
                    chain_type, table, path, metadata.declared_properties(chain_type)
                )
                if not column.is_system
            ]
            tables[chain_type] = table

        first_table = tables[tabled_types[0]]
        query = SelectQuery(source=first_table, alias=self.next_alias(template), path=path)
        for chain_type in tabled_types[1:]:
            table = tables[chain_type]
            statements = [
                JoinStatement(
                    _require_column(first_table, key_name), _require_column(table, key_name)
                )
                for key_name in metadata.keys(type_name)
            ]
            query.joins.append(Join(first_table, table, JoinType.INNER, statements))

        for prop in metadata.properties(type_name):
            declaring_type = metadata.declaring_type(type_name, prop.name)
            # Keys are stored in every table of the chain, read them from the first one.
            table = first_table if prop.is_key else tables.get(declaring_type)
            if table is None:
                raise ConfigurationError(
                    f"Property {prop.name} of type {type_name} is declared on type "
                    f"{declaring_type}, which is not stored in any table."
                )
            query.add_column(_require_column(table, prop.name))
        if metadata.has_discriminator(type_name):
            query.add_column(
                Column(
                    name=TYPE_NAME_COLUMN,
                    alias=TYPE_NAME_COLUMN,
                    element_type=str,
                    path=path,
                    nullable=False,
                    declaring_type=type_name,
                    is_system=True,
                    expression=LiteralValue(type_name),
                )
            )
        query.expose_columns()
        return query

    def create_join(
        self,
        parent_node: PathNode,
        child_node: PathNode,
        parent_source: Source,
        child_source: Source,
        join_type: JoinType,
        template: str,
    ) -> Join:
        """Create the join from the source of the parent node to the source of the child node."""
        resolution = self.metadata.resolve_node_join(parent_node, child_node)
        if resolution.intermediate is None:
            statements = [
                JoinStatement(
                    _require_column(parent_source, left), _require_column(child_source, right)
                )
                for left, right in resolution.column_pairs
            ]
            return Join(parent_source, child_source, join_type, statements)

        intermediate = resolution.intermediate
        link_table = TableSource(
            name=intermediate.name, alias=self.next_alias(template), path=child_source.path
        )
        left_link, right_link = (
            Column(name=name, alias=name, source=link_table, path=child_source.path, is_system=True)
            for name in (intermediate.left_column, intermediate.right_column)
        )
        link_table.available_columns = [left_link, right_link]
        (left, right) = get_only_element_from_collection(resolution.column_pairs)
        return Join(
            parent_source,
            child_source,
            join_type,
            [JoinStatement(_require_column(parent_source, left), left_link)],
            intermediate_table=link_table,
            intermediate_statements=[
                JoinStatement(right_link, _require_column(child_source, right))
            ],
        )


def _require_column(source: Source, name: str) -> Column:
    column = find_available_column(source, name)
    if column is None:
        alias = getattr(source, "alias", "")
        raise ConfigurationError(f"Column {name} is not available on source {alias}.")
    return column


def _default_orderings(metadata: TypeMetadata, type_name: str) -> Tuple[OrderBy, ...]:
    return tuple(OrderBy(key_name) for key_name in metadata.keys(type_name))


def _aggregate_element_type(kind: AggregateKind, columns: Tuple[Column, ...]) -> Optional[type]:
    if kind in (AggregateKind.COUNT, AggregateKind.COUNT_DISTINCT):
        return int
    elif kind == AggregateKind.AVERAGE:
        return float
    elif len(columns) == 1:
        return columns[0].element_type
    return None


class QueryBuilder:
    """Builds one SelectQuery for a root type; nested copies and branches use their own builder.

    Args:
        context: state shared by every query of the plan.
        root_type: entity type the query is rooted at.
        request: the request to plan.
        template: alias template of the sources created by this builder.
        base_path: full path of the root of this builder's tree within the request's tree, for
                   queries built for an expand branch.
    """

    def __init__(
        self,
        context: PlanContext,
        root_type: str,
        request: QueryRequest,
        template: str,
        base_path: str = "",
    ) -> None:
        """Create a builder with a fresh path tree."""
        self.context = context
        self.metadata = context.metadata
        self.settings = context.settings
        self.request = request
        self.template = template
        self.base_path = base_path
        self.tree = PathTree(self.metadata, root_type)
        self.sources: Dict[str, Source] = {}
        self.query = SelectQuery(
            alias=context.next_alias(template), path=base_path, root_node=self.tree.root
        )

        self.orderings: Tuple[OrderBy, ...] = request.orderings
        self.split_branches = False
        self._any_or_all: List[AnyOrAll] = []
        self._grouping_sets: List[GroupingSet] = []
        self._aggregate_columns: List[Column] = []
        self._select_columns: List[Column] = []
        self._expanded_orderings: List[Ordering] = []
        # Component ids of the nodes that filters, orderings or selects refer to.
        self._referenced: Set[str] = set()

    # Entry points

    def build(self) -> SelectQuery:
        """Build the complete query for the request."""
        self._prepare(include_expand=True)
        self._emit_columns()
        self._add_order_by()
        if self.split_branches:
            self._project()
        else:
            if self.query.joins and not self.query.is_aggregate_query:
                # Joined nodes must not repeat the rows of the entities they were joined with.
                self.query.distinct = True
                self.context.projection_helper.fix_up_order_by(self.query)
            self._apply_paging()
        return self.query

    def build_branch(self) -> SelectQuery:
        """Build the query of an expand branch: no expansion and no paging of its own."""
        self._prepare(include_expand=False)
        self._emit_columns()
        self._add_order_by()
        return self.query

    def build_paging_copy(self) -> SelectQuery:
        """Build the distinct, key-only copy of the query used to emulate paging with joins."""
        self._prepare(include_expand=False)
        if self.query.is_aggregate_query or self._grouping_sets or self._aggregate_columns:
            self._emit_columns()
        else:
            root = self.tree.root
            for key_name in self.metadata.keys(root.element_type):
                self._add_unique(self.resolve_column(root, key_name))
        self._add_order_by()
        self.query.distinct = bool(self.query.joins) and self._grouping_sets == []
        self.context.projection_helper.fix_up_order_by(self.query)
        self._apply_paging()
        return self.query

    # Sources and columns

    def absolute_path(self, node: PathNode) -> str:
        """Return the full path of the node within the request's tree."""
        return join_path(self.base_path, node.full_path)

    def node_source(self, node: PathNode) -> Source:
        """Return the source of the node, creating it on first use."""
        path = self.absolute_path(node)
        source = self.sources.get(path)
        if source is None:
            source = self.context.create_source(node.element_type, path, self.template)
            self.sources[path] = source
        return source

    def resolve_column(self, node: PathNode, name: str) -> Column:
        """Return the column of the node's source for the named property."""
        source = self.node_source(node)
        if name == TYPE_NAME_COLUMN:
            column = find_available_column(source, name)
            if column is None:
                raise ConfigurationError(
                    f"Type {node.element_type} is not polymorphic and has no {name} column."
                )
            return column

        if self.metadata.find_property(node.element_type, name) is None and isinstance(
            source, UnionSource
        ):
            # Unions offer the members of all their subtypes.
            column = find_available_column(source, name)
            if column is not None and not column.is_system:
                return column

        prop = self.metadata.check_is_legal_column(node.element_type, name)
        column = find_available_column(source, prop.name)
        if column is None:
            raise AssertionError(
                f"Source of node {node} unexpectedly has no column for property {prop.name}."
            )
        return column

    def resolve_path(self, property_path: str, scope: Optional[PathNode] = None) -> Column:
        """Align the navigation prefix of a property path and return the property's column."""
        prefix, name = split_property_path(property_path)
        node = self.tree.align(scope or self.tree.root, prefix)
        self._mark_referenced(node)
        return self.resolve_column(node, name)

    def _mark_referenced(self, node: PathNode) -> None:
        self._referenced.add(node.component_id)
        self._referenced.update(ancestor.component_id for ancestor in node.iter_ancestors())

    def node_for_column(self, column: Column) -> PathNode:
        """Return the node whose source offers the column."""
        for node in self.tree.iter_breadth_first():
            if self.absolute_path(node) == column.path:
                return node
        raise AssertionError(f"No node of the tree has the path {column.path} of {column}.")

    # Preparation

    def _prepare(self, include_expand: bool) -> None:
        root = self.tree.root
        self.query.source = self.node_source(root)

        if include_expand:
            if self.request.expand and self.request.is_aggregate_query:
                raise UnsupportedOperationError(
                    "Expanding navigation properties is not supported in aggregate queries."
                )
            self._populate_expanded_nodes()

        self._test_order_rules()
        argument_filter = self._fix_up_argument_filter()
        self.query.filter = combine_with_and([copy.deepcopy(self.request.filter), argument_filter])
        self.query.top = self.request.top
        self.query.skip = self.request.skip

        self._align_filter(self.query.filter, root)
        if include_expand:
            self.split_branches = self._requires_branch_splitting()
        self._align_groupings()
        self._align_aggregates()
        self._align_selects()
        self._make_joins()
        self._bind_sub_selects()

    def _iter_expanded_nodes(self) -> Iterator[PathNode]:
        return (node for node in self.tree.iter_breadth_first() if node.is_expanded)

    def _populate_expanded_nodes(self) -> None:
        stack: List[Tuple[PathNode, Expand]] = [
            (self.tree.root, expand) for expand in reversed(self.request.expand)
        ]
        while stack:
            parent, expand = stack.pop()
            node = self.tree.align(parent, expand.name)
            chain_node: Optional[PathNode] = node
            while chain_node is not None and chain_node is not parent:
                chain_node.is_expanded = True
                chain_node = chain_node.parent
            node.expand = expand
            orderings = expand.orderings
            if (expand.top is not None or expand.skip) and not orderings:
                orderings = _default_orderings(self.metadata, node.element_type)
            node.set_configuration(expand.top, expand.skip, orderings)
            self.node_source(node)
            stack.extend((node, child) for child in reversed(expand.children))

    def _requires_branch_splitting(self) -> bool:
        expanded = list(self._iter_expanded_nodes())
        collections = [node for node in expanded if node.is_collection]
        is_paged = self.request.top is not None or bool(self.request.skip)
        has_branch_filter = any(
            node.expand is not None and node.expand.filter is not None for node in expanded
        )
        # A joined collection the filter reads from only holds the members matching the filter.
        is_filtered = any(node.component_id in self._referenced for node in collections)
        split = (
            len(collections) >= 2
            or (is_paged and bool(collections))
            or has_branch_filter
            or is_filtered
        )
        if split:
            logger.debug(
                "Splitting %s expanded branches of %s into separate queries.",
                len(expanded),
                self.tree.root.element_type,
            )
        return split

    def _test_order_rules(self) -> None:
        if (self.request.top is not None or self.request.skip) and not self.orderings:
            self.orderings = _default_orderings(self.metadata, self.tree.root.element_type)

    def _fix_up_argument_filter(self) -> Optional[Expression]:
        """Turn key predicates on ancestors into predicates, joining only where unavoidable."""
        nodes_and_keys = []
        node = self.tree.root
        for segment in self.request.argument_path:
            node = self.tree.align_reverse(node, segment.member, segment.entity_type)
            nodes_and_keys.append((node, segment.keys))

        predicates: List[Expression] = []
        needed_nodes = set()
        for node, keys in reversed(nodes_and_keys):
            parent = node.parent
            if parent is None:
                raise AssertionError(f"Reverse node {node} unexpectedly has no parent.")
            resolution = self.metadata.resolve_node_join(parent, node)
            covered: Dict[str, str] = {}
            if resolution.intermediate is None:
                covered = {right.lower(): left for left, right in resolution.column_pairs}

            for name, value in keys.items():
                prop = self.metadata.check_is_legal_column(node.element_type, name)
                parent_column_name = covered.get(prop.name.lower())
                if parent_column_name is not None:
                    column = self.resolve_column(parent, parent_column_name)
                    needed_nodes.add(parent.component_id)
                else:
                    column = self.resolve_column(node, prop.name)
                    needed_nodes.add(node.component_id)
                predicates.append(
                    Comparison(
                        ComparisonOperator.EQ,
                        PropertyReference(column.alias, column=column),
                        Literal(value),
                    )
                )

            if node.component_id not in needed_nodes and not node.children:
                self.sources.pop(self.absolute_path(node), None)
                self.tree.remove(node)
        return combine_with_and(predicates)

    # Alignment

    def _align_filter(self, expression: Optional[Expression], scope: PathNode) -> None:
        if expression is None:
            return
        stack: List[Tuple[Expression, PathNode]] = [(expression, scope)]
        while stack:
            current, current_scope = stack.pop()
            if isinstance(current, PropertyReference):
                if current.column is None:
                    current.column = self.resolve_path(current.path, current_scope)
            elif isinstance(current, AnyOrAll):
                steps = split_path(current.path)
                if not steps:
                    raise ConfigurationError("An any/all predicate requires a navigation path.")
                parent = self.tree.align(current_scope, join_path(*steps[:-1]))
                node = self.tree.add_sub_select(parent, steps[-1])
                current.node = node
                self._mark_referenced(node)
                self.node_source(node)
                self._any_or_all.append(current)
                if current.predicate is not None:
                    stack.append((current.predicate, node))
            else:
                stack.extend((child, current_scope) for child in get_child_expressions(current))

    def _align_groupings(self) -> None:
        for grouping in self.request.groupings:
            if grouping.kind == GroupingKind.NONE and len(grouping.properties) != 1:
                raise ConfigurationError(
                    f"A grouping without rollup must have exactly one column, got "
                    f"{list(grouping.properties)}."
                )
            columns = [self.resolve_path(property_path) for property_path in grouping.properties]
            self._grouping_sets.append(
                GroupingSet(columns, rollup=grouping.kind == GroupingKind.ROLLUP)
            )
        self._configure_abstract_group_by()

    def _configure_abstract_group_by(self) -> None:
        """Group polymorphic rows by their concrete type as well."""
        grouped = {id(column) for grouping in self._grouping_sets for column in grouping.columns}
        for grouping in list(self._grouping_sets):
            for column in grouping.columns:
                node = self.node_for_column(column)
                if not self.metadata.subtypes(node.element_type):
                    continue
                discriminator = self.resolve_column(node, TYPE_NAME_COLUMN)
                if id(discriminator) not in grouped:
                    grouped.add(id(discriminator))
                    self._grouping_sets.append(GroupingSet([discriminator]))

    def _align_aggregates(self) -> None:
        for aggregate in self.request.aggregates:
            expression = copy.deepcopy(aggregate.expression)
            self._align_filter(expression, self.tree.root)
            references = list(iter_property_references(expression))
            alias = aggregate.alias
            if alias is None:
                if not isinstance(expression, PropertyReference):
                    raise ConfigurationError(
                        f"An aggregate over {len(references)} properties requires an alias: "
                        f"{aggregate}"
                    )
                alias = expression.name

            columns = tuple(
                reference.column for reference in references if reference.column is not None
            )
            paths = {column.path for column in columns}
            if len(paths) > 1:
                raise DataInconsistencyError(
                    f"Aggregate {alias} combines members of several navigation paths "
                    f"{sorted(paths)}; its values cannot be attributed to a single entity."
                )
            self._aggregate_columns.append(
                Column(
                    name=alias,
                    alias=alias,
                    element_type=_aggregate_element_type(aggregate.kind, columns),
                    path=first(paths) if len(paths) == 1 else self.base_path,
                    computed=True,
                    expression=AggregateReference(aggregate.kind, expression, columns),
                )
            )

    def _entity_columns(self, node: PathNode) -> List[Column]:
        source = self.node_source(node)
        if isinstance(source, SelectQuery):
            candidates = source.expose_columns()
        else:
            candidates = source.available_columns
        return [
            column
            for column in candidates
            if not column.is_system and not column.is_supplemental
        ]

    def _align_selects(self) -> None:
        root = self.tree.root
        if self.request.selects:
            self._select_columns = [self.resolve_path(path) for path in self.request.selects]
        elif not self.request.is_aggregate_query:
            self._select_columns = self._entity_columns(root)

        if self.split_branches:
            return
        for node in list(self._iter_expanded_nodes()):
            expand = node.expand
            if expand is not None and expand.selects:
                self._select_columns.extend(
                    self.resolve_path(path, node) for path in expand.selects
                )
            else:
                self._select_columns.extend(self._entity_columns(node))
            for ordering in node.order_by:
                self._expanded_orderings.append(
                    Ordering(self.resolve_path(ordering.name, node), ordering.descending)
                )

    # Joins

    def _make_joins(self) -> None:
        for parent, child in self.tree.edges():
            if (
                self.split_branches
                and child.is_expanded
                and child.component_id not in self._referenced
            ):
                # Only the branch queries read the rows of nodes that are merely expanded.
                continue
            if child.is_expanded and not self.split_branches:
                join_type = JoinType.LEFT
            else:
                # Joins of a split seed only restrict the root rows.
                join_type = self.settings.default_join_type
            self.query.joins.append(
                self.context.create_join(
                    parent,
                    child,
                    self.node_source(parent),
                    self.node_source(child),
                    join_type,
                    self.template,
                )
            )

    def _bind_sub_selects(self) -> None:
        for predicate in self._any_or_all:
            node = predicate.node
            parent = node.parent if node is not None else None
            if node is None or parent is None:
                raise AssertionError(f"Quantified predicate {predicate} has no sub-select node.")
            predicate.join = self.context.create_join(
                parent,
                node,
                self.node_source(parent),
                self.node_source(node),
                JoinType.INNER,
                self.template,
            )
            predicate.inner_joins = [
                self.context.create_join(
                    inner_parent,
                    inner_child,
                    self.node_source(inner_parent),
                    self.node_source(inner_child),
                    JoinType.INNER,
                    self.template,
                )
                for inner_parent, inner_child in self.tree.edges(start=node)
            ]

    # Output

    def _add_unique(self, column: Column) -> Column:
        """Add an output column unless the same member of the same node is already selected."""
        for existing in self.query.all_columns:
            if existing is column or (
                existing.member == column.member
                and existing.path == column.path
                and existing.aggregate_ref is None
                and column.aggregate_ref is None
            ):
                return existing

        alias = column.alias
        for suffix in itertools.count(1):
            if self.query.find_column(alias) is None:
                break
            alias = f"{column.alias}{suffix}"
        if alias != column.alias:
            column = column.copy(alias=alias, member_name=column.member)
        return self.query.add_column(column)

    def _add_identifying_columns(self, columns: List[Column]) -> None:
        """Select the keys and discriminator of every node contributing output columns."""
        nodes: List[PathNode] = []
        for column in columns:
            node = self.node_for_column(column)
            for chain_node in reversed([node] + list(node.iter_ancestors())):
                if chain_node not in nodes:
                    nodes.append(chain_node)

        for node in nodes:
            for key_name in self.metadata.keys(node.element_type):
                self._add_unique(self.resolve_column(node, key_name))
            discriminator = find_available_column(self.node_source(node), TYPE_NAME_COLUMN)
            if discriminator is not None:
                self._add_unique(discriminator)

    def _emit_columns(self) -> None:
        if self._grouping_sets:
            self.query.group_by = GroupByClause(self._grouping_sets)

        if not self.request.is_aggregate_query:
            columns = list(self._select_columns)
            for column in columns:
                self._add_unique(column)
            self._add_identifying_columns(columns)
            for column in self._aggregate_columns:
                self._add_unique(column)
            return

        grouped = set()
        for grouping in self._grouping_sets:
            for column in grouping.columns:
                grouped.add(id(column))
                self._add_unique(column)
        for column in self._select_columns:
            if id(column) in grouped:
                continue
            if column.is_key and self.query.joins:
                # Keys of joined nodes are constant within a group of the root entity.
                self._add_unique(
                    column.copy(
                        expression=AggregateReference(
                            AggregateKind.MAX,
                            PropertyReference(column.alias, column=column),
                            (column,),
                        ),
                        computed=True,
                    )
                )
            else:
                raise ConfigurationError(
                    f"Column {column.alias} must be grouped or aggregated in an aggregate query."
                )
        for column in self._aggregate_columns:
            self._add_unique(column)

    def _add_order_by(self) -> None:
        aggregates_by_alias = {column.alias.lower(): column for column in self._aggregate_columns}
        for ordering in self.orderings:
            column = aggregates_by_alias.get(ordering.name.lower())
            if column is None:
                column = self.resolve_path(ordering.name)
            if self.query.is_aggregate_query and not any(
                existing is column or existing.alias == column.alias
                for existing in self.query.all_columns
            ):
                raise ConfigurationError(
                    f"Cannot order an aggregate query by {ordering.name}, which is neither "
                    f"grouped nor aggregated."
                )
            self.query.order_by.append(Ordering(column, ordering.descending))
        self.query.order_by.extend(self._expanded_orderings)

    # Paging

    def _apply_paging(self) -> None:
        if self.query.skip and self.settings.use_join_for_skip:
            if self.query.is_aggregate_query:
                self._wrap_aggregate_for_skip()
            else:
                self.create_skip_or_top(self.query, top=False)

    def _build_copy(self, template: str, top: Optional[int], skip: Optional[int]) -> SelectQuery:
        request = replace(
            self.request,
            expand=(),
            selects=(),
            orderings=self.orderings,
            top=top,
            skip=skip,
        )
        builder = QueryBuilder(
            self.context, self.tree.root.element_type, request, template, self.base_path
        )
        return builder.build_paging_copy()

    def create_skip_or_top(self, query: SelectQuery, top: bool) -> None:
        """Restrict the query to a page of root rows by joining it with a paged copy of itself.

        For top, the copy holds the keys of the rows in the page and is inner joined. For skip,
        the copy holds the keys of the first skipped rows; it is left joined and only rows
        without a match are kept.
        """
        if top:
            paging_copy = self._build_copy(self.settings.top_template, query.top, query.skip)
        else:
            paging_copy = self._build_copy(self.settings.skip_template, query.skip, None)
        logger.debug(
            "Emulating %s of query %s with the copy %s.",
            "top" if top else "skip",
            query.alias,
            paging_copy.alias,
        )

        root = self.tree.root
        root_source = self.node_source(root)
        statements = [
            JoinStatement(
                self.resolve_column(root, key_name),
                _require_column(paging_copy, self.resolve_column(root, key_name).alias),
            )
            for key_name in self.metadata.keys(root.element_type)
        ]
        if not statements:
            raise ConfigurationError(
                f"Cannot page type {root.element_type} with joins, since it has no keys."
            )
        join_type = JoinType.INNER if top else JoinType.LEFT
        query.joins.append(Join(root_source, paging_copy, join_type, statements))
        if top:
            query.top = None
        else:
            first_column = statements[0].right
            query.filter = combine_with_and(
                [query.filter, IsNull(PropertyReference(first_column.alias, column=first_column))]
            )
        query.skip = None

    def _wrap_aggregate_for_skip(self) -> None:
        """Skip groups by joining the grouped rows with the first grouped rows, as a subselect."""
        inner = self.query
        paging_copy = self._build_copy(self.settings.skip_template, inner.skip, None)
        outer = SelectQuery(
            source=inner,
            alias=self.context.next_alias(self.template),
            path=inner.path,
            root_node=inner.root_node,
            top=inner.top,
        )
        exposed = {column.alias: column for column in inner.expose_columns()}
        for column in inner.expose_columns():
            outer.add_column(column)

        copy_exposed = {column.alias: column for column in paging_copy.expose_columns()}
        statements = [
            JoinStatement(exposed[column.alias], copy_exposed[column.alias])
            for column in inner.all_columns
            if column.aggregate_ref is None and column.alias in copy_exposed
        ]
        if not statements:
            raise UnsupportedOperationError(
                "Skipping rows of an aggregate query requires at least one grouped column."
            )
        outer.joins.append(Join(inner, paging_copy, JoinType.LEFT, statements))
        first_column = statements[0].right
        outer.filter = IsNull(PropertyReference(first_column.alias, column=first_column))
        outer.order_by = [
            Ordering(exposed[ordering.column.alias], ordering.descending)
            for ordering in inner.order_by
        ]
        inner.order_by = []
        inner.top = None
        inner.skip = None
        self.query = outer

    # Branch splitting

    def _project(self) -> None:
        """Move the root rows into a seed query and each expanded branch into its own query."""
        helper = self.context.projection_helper
        query = self.query
        root = self.tree.root

        helper.locate_source(self, root)
        projection_columns = helper.locate_columns(self, root, self.node_source(root))

        seed = SelectQuery(
            source=query.source,
            alias=self.context.next_alias(self.template),
            path=query.path,
            joins=[join.copy() for join in query.joins],
            filter=query.filter,
            order_by=list(query.order_by),
            top=query.top,
            skip=query.skip,
            distinct=bool(query.joins),
            root_node=root,
        )
        for column in query.all_columns:
            seed.add_column(column)
        for column in projection_columns:
            seed.add_column(column)
        seed.key_columns = projection_columns[: len(self.metadata.keys(root.element_type))]

        if seed.joins and (seed.top is not None or seed.skip):
            self.create_skip_or_top(seed, top=True)
        elif seed.skip and self.settings.use_join_for_skip:
            self.create_skip_or_top(seed, top=False)
        helper.fix_up_order_by(seed)

        query.path_query = helper.create_path_query(self, projection_columns, seed)
        query.path_subselect = helper.align_columns_to_path(query.path_query, projection_columns)

        for node in self._iter_expanded_nodes():
            query.secondary_queries.append(self._build_secondary(node))

        query.joins = []
        query.order_by = []
        query.filter = None
        query.top = None
        query.skip = None
        query.insert_query = seed
        helper.reconfigure_joins(self, query)
        helper.fix_sub_selects(self, query)

    def _build_secondary(self, node: PathNode) -> SelectQuery:
        expand = node.expand or Expand(node.path)
        request = QueryRequest(
            filter=expand.filter, selects=expand.selects, orderings=node.order_by
        )
        helper = self.context.projection_helper
        builder = QueryBuilder(
            self.context, node.element_type, request, self.template, self.absolute_path(node)
        )
        branch_root = builder.tree.root
        source = helper.locate_source(builder, branch_root)
        secondary = builder.build_branch()
        secondary.root_node = node
        projection_columns = helper.locate_columns(builder, branch_root, source, node)
        for column in projection_columns:
            secondary.add_column(column)
        secondary.key_columns = projection_columns[: len(self.metadata.keys(node.element_type))]
        return secondary


class PlanBuilder:
    """Plans requests against the registered type metadata."""

    def __init__(
        self,
        metadata: TypeMetadata,
        settings: Optional[PlanBuilderSettings] = None,
        projection_helper: Optional[ProjectionHelper] = None,
    ) -> None:
        """Create a builder; plans are independent of each other and of the builder."""
        self.metadata = metadata
        self.settings = settings or PlanBuilderSettings()
        self.projection_helper = projection_helper or ProjectionHelper()

    @classmethod
    def for_executor(
        cls,
        metadata: TypeMetadata,
        executor: "Executor",
        settings: Optional[PlanBuilderSettings] = None,
    ) -> "PlanBuilder":
        """Create a builder planning for the capabilities of the given executor."""
        settings = replace(
            settings or PlanBuilderSettings(), use_join_for_skip=executor.use_join_for_skip
        )
        return cls(metadata, settings, executor.projection_helper)

    def build(self, root_type: str, request: QueryRequest) -> SelectQuery:
        """Return the plan of the request against the root type.

        Raises:
            ConfigurationError: if the request references unknown members or relations that
                                cannot be joined.
            UnsupportedOperationError: if the request has a shape that cannot be planned.
        """
        context = PlanContext(self.metadata, self.settings, self.projection_helper)
        plan = QueryBuilder(context, root_type, request, self.settings.alias_template).build()
        if self.settings.query_processor is not None:
            plan = self.settings.query_processor(plan)
        return plan

    def build_count(self, root_type: str, request: QueryRequest) -> SelectQuery:
        """Return the plan selecting every root row the request matches, ignoring paging."""
        count_request = replace(request, expand=(), orderings=(), top=None, skip=None)
        return self.build(root_type, count_request)
