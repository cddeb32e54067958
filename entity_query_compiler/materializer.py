# Copyright 2017-present Kensho Technologies, LLC.
"""Rebuild the hierarchical entities of a request from the flat rows its plan returned.

The columns of every row are bucketed by the node they belong to. Identical buckets of the same
node collapse into a single result, so parents repeated by one-to-many joins are only created
once. Results are then linked to the results of their parent node, and finally each parent's
navigation members are populated from its children, deepest nodes first.
"""
from collections import deque
from dataclasses import dataclass, field
import logging
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .exceptions import DataInconsistencyError
from .global_utils import TYPE_NAME_COLUMN
from .path_tree import PathNode
from .query_plan import Column, SelectQuery
from .schema.type_metadata import TypeMetadata
from .value_coercion import coerce_value


logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


@dataclass(frozen=True)
class RawRowSet:
    """Rows returned by an executor for one plan.

    For plans with split branches, rows are the rows of the seed query, and secondary_rows maps
    the component id of each branch node to the rows of its branch query.
    """

    rows: Sequence[Row]
    secondary_rows: Mapping[str, Sequence[Row]] = field(default_factory=dict)


@dataclass(eq=False)
class Result:
    """One entity materialized for one node."""

    component_id: str
    path: str
    member: Any
    # Child component id -> children, in order of discovery and without repetition.
    nodes: Dict[str, Dict[int, "Result"]] = field(default_factory=dict)

    def add_child(self, child: "Result") -> None:
        """Link a child result, ignoring repeated links."""
        self.nodes.setdefault(child.component_id, {})[id(child)] = child


def _iter_nodes(root: PathNode) -> List[PathNode]:
    nodes = []
    queue: Deque[PathNode] = deque([root])
    while queue:
        node = queue.popleft()
        nodes.append(node)
        queue.extend(node.children)
    return nodes


def _is_aggregate_plan(plan: SelectQuery) -> bool:
    current: Optional[SelectQuery] = plan
    while current is not None:
        if current.is_aggregate_query:
            return True
        current = current.source if isinstance(current.source, SelectQuery) else None
    return False


def _set_member(instance: Any, name: str, value: Any) -> None:
    if isinstance(instance, dict):
        instance[name] = value
    else:
        setattr(instance, name, value)


def _get_member(instance: Any, name: str) -> Any:
    if isinstance(instance, dict):
        return instance.get(name)
    return getattr(instance, name, None)


class ResultMaterializer:
    """Materializes rows into instances created through the type metadata's factory table."""

    def __init__(self, metadata: TypeMetadata) -> None:
        """Create a materializer for entities of the registered types."""
        self.metadata = metadata

    def materialize(self, plan: SelectQuery, raw: RawRowSet) -> List[Any]:
        """Return the root entities of the plan, in row order.

        Raises:
            DataInconsistencyError: if a row holds a child entity without its parent entity, a
                                    branch row refers to a parent that was not selected, or a
                                    discriminator names an unknown type.
        """
        if _is_aggregate_plan(plan):
            return [self._materialize_record(plan, row) for row in raw.rows]
        if plan.root_node is None:
            raise AssertionError(f"Plan {plan.alias} has no root node to materialize.")

        nodes = _iter_nodes(plan.root_node)
        if plan.has_projection:
            roots = self._materialize_split(plan, raw, nodes)
        else:
            roots = self._materialize_flat(plan, raw.rows, nodes)
        self._populate(roots, nodes)
        return [root.member for root in roots]

    def _materialize_record(self, plan: SelectQuery, row: Row) -> Dict[str, Any]:
        """Aggregate rows are plain records of their public columns."""
        return {
            column.alias: coerce_value(column.element_type, row[column.alias])
            for column in plan.columns
        }

    def _columns_by_path(self, columns: Iterable[Column]) -> Dict[str, List[Column]]:
        columns_by_path: Dict[str, List[Column]] = {}
        for column in columns:
            if column.is_system and column.alias != TYPE_NAME_COLUMN:
                continue
            columns_by_path.setdefault(column.path, []).append(column)
        return columns_by_path

    def _create_result(
        self,
        node: PathNode,
        columns: List[Column],
        row: Row,
        results: Dict[Tuple[Any, ...], Result],
    ) -> Optional[Result]:
        """Return the result of the node's bucket in the row, None if the bucket is empty."""
        values = tuple(row[column.alias] for column in columns)
        if not node.is_root and all(value is None for value in values):
            return None

        bucket_key = (node.component_id,) + values
        result = results.get(bucket_key)
        if result is None:
            instance = self._create_instance(node, columns, values)
            result = Result(node.component_id, node.full_path, instance)
            results[bucket_key] = result
        return result

    def _create_instance(self, node: PathNode, columns: List[Column], values: Tuple) -> Any:
        type_name = node.element_type
        for column, value in zip(columns, values):
            if column.alias == TYPE_NAME_COLUMN and value is not None:
                type_name = self.metadata.locate_type(value)

        instance = self.metadata.create_instance(type_name)
        bag_name = self.metadata.dynamic_property_bag(type_name)
        for column, value in zip(columns, values):
            if column.is_system:
                continue
            prop = self.metadata.find_property(type_name, column.member)
            if prop is not None:
                _set_member(instance, prop.name, coerce_value(prop.element_type, value))
            elif value is None:
                # Placeholders of members the concrete type does not have.
                continue
            elif bag_name is not None:
                bag = _get_member(instance, bag_name)
                if bag is None:
                    bag = {}
                    _set_member(instance, bag_name, bag)
                bag[column.member] = coerce_value(column.element_type, value)
            elif isinstance(instance, dict):
                instance[column.member] = coerce_value(column.element_type, value)
        return instance

    def _materialize_flat(
        self, plan: SelectQuery, rows: Sequence[Row], nodes: List[PathNode]
    ) -> List[Result]:
        columns_by_path = self._columns_by_path(plan.all_columns)
        output_nodes = [node for node in nodes if node.full_path in columns_by_path]
        results: Dict[Tuple[Any, ...], Result] = {}
        roots: Dict[int, Result] = {}

        for row in rows:
            row_results: Dict[str, Optional[Result]] = {}
            for node in output_nodes:
                result = self._create_result(node, columns_by_path[node.full_path], row, results)
                row_results[node.component_id] = result
                if node.is_root:
                    if result is not None:
                        roots.setdefault(id(result), result)
                    continue
                if result is None:
                    continue

                parent_result = self._find_parent_result(node, row_results)
                if parent_result is None:
                    raise DataInconsistencyError(
                        f"A row holds an entity of {node.full_path} without the entity it "
                        f"belongs to: {dict(row)}"
                    )
                parent_result.add_child(result)
        return list(roots.values())

    def _find_parent_result(
        self, node: PathNode, row_results: Dict[str, Optional[Result]]
    ) -> Optional[Result]:
        for ancestor in node.iter_ancestors():
            if ancestor.component_id in row_results:
                return row_results[ancestor.component_id]
        return None

    def _materialize_split(
        self, plan: SelectQuery, raw: RawRowSet, nodes: List[PathNode]
    ) -> List[Result]:
        seed = plan.insert_query
        root = plan.root_node
        if seed is None or root is None:
            raise AssertionError(f"Plan {plan.alias} has no seed query.")

        results: Dict[Tuple[Any, ...], Result] = {}
        # Component id -> key values -> results holding those keys.
        results_by_key: Dict[str, Dict[Tuple[Any, ...], List[Result]]] = {}

        root_columns = self._columns_by_path(seed.all_columns).get(root.full_path, [])
        roots: Dict[int, Result] = {}
        for row in raw.rows:
            result = self._create_result(root, root_columns, row, results)
            if result is None:
                raise AssertionError(f"Root rows are never empty, got {dict(row)}.")
            roots.setdefault(id(result), result)
            self._index_result(results_by_key, root, seed.key_columns, row, result)

        for secondary in plan.secondary_queries:
            node = secondary.root_node
            parent = node.parent if node is not None else None
            if node is None or parent is None:
                raise AssertionError(f"Branch query {secondary.alias} has no parent node.")
            columns = self._columns_by_path(secondary.all_columns).get(node.full_path, [])
            parent_index = results_by_key.get(parent.component_id, {})
            rows = raw.secondary_rows.get(node.component_id, ())
            logger.debug("Materializing %s rows of the branch %s.", len(rows), node.full_path)

            for row in rows:
                result = self._create_result(node, columns, row, results)
                if result is None:
                    continue
                parent_key = tuple(row[column.alias] for column in secondary.parent_key_columns)
                parents = parent_index.get(parent_key)
                if not parents:
                    raise DataInconsistencyError(
                        f"A row of the branch {node.full_path} refers to the parent keys "
                        f"{parent_key}, which were not selected: {dict(row)}"
                    )
                for parent_result in parents:
                    parent_result.add_child(result)
                self._index_result(results_by_key, node, secondary.key_columns, row, result)
        return list(roots.values())

    def _index_result(
        self,
        results_by_key: Dict[str, Dict[Tuple[Any, ...], List[Result]]],
        node: PathNode,
        key_columns: List[Column],
        row: Row,
        result: Result,
    ) -> None:
        key = tuple(row[column.alias] for column in key_columns)
        indexed = results_by_key.setdefault(node.component_id, {}).setdefault(key, [])
        if all(existing is not result for existing in indexed):
            indexed.append(result)

    def _populate(self, roots: List[Result], nodes: List[PathNode]) -> None:
        """Set the navigation members of every result from its children, deepest first."""
        nodes_by_id = {node.component_id: node for node in nodes}
        ordered: List[Result] = []
        queue: Deque[Result] = deque(roots)
        seen = set()
        while queue:
            result = queue.popleft()
            if id(result) in seen:
                continue
            seen.add(id(result))
            ordered.append(result)
            for children in result.nodes.values():
                queue.extend(children.values())

        for result in reversed(ordered):
            node = nodes_by_id[result.component_id]
            for child_node in node.children:
                if not child_node.is_expanded:
                    continue
                linked = result.nodes.get(child_node.component_id, {})
                children = [child.member for child in linked.values()]
                if child_node.is_collection:
                    start = child_node.skip or 0
                    stop = None if child_node.top is None else start + child_node.top
                    _set_member(result.member, child_node.path, children[start:stop])
                elif len(children) > 1:
                    raise DataInconsistencyError(
                        f"Expected at most one entity of {child_node.full_path} per parent, got "
                        f"{len(children)}."
                    )
                else:
                    _set_member(result.member, child_node.path, children[0] if children else None)
