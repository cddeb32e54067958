# Copyright 2017-present Kensho Technologies, LLC.
"""The tree of navigation steps a request touches, rooted at the queried entity type."""
from collections import deque
from typing import Deque, Dict, Iterator, List, Optional, Tuple
import weakref

from .exceptions import ConfigurationError
from .global_utils import PATH_SEPARATOR, split_path
from .request import Expand, OrderBy
from .schema.type_metadata import TypeMetadata


ROOT_COMPONENT_ID = "0"

# Full paths of reverse nodes are marked, so they never collide with a forward navigation.
REVERSE_PATH_PREFIX = "~"

# Full paths of sub-select nodes carry their component id, so every quantified predicate reads
# its own rows.
SUB_SELECT_PATH_PREFIX = "?"


class PathNode:
    """One navigation step of a request.

    Nodes are owned by their parent; the parent reference is weak. The component id is derived
    from the position of the node in the tree alone: the parent id followed by the ordinal of the
    child, in order of discovery.
    """

    def __init__(
        self,
        element_type: str,
        path: str = "",
        parent: Optional["PathNode"] = None,
        is_collection: bool = False,
        reverse: bool = False,
        component_id: str = ROOT_COMPONENT_ID,
    ) -> None:
        """Create a detached node. Use PathTree.align to grow a tree."""
        self.element_type = element_type
        self.path = path
        self._parent = weakref.ref(parent) if parent is not None else None
        self.children: List[PathNode] = []
        self.is_collection = is_collection
        self.is_sub_select = False
        self.reverse = reverse
        self.component_id = component_id

        self.top: Optional[int] = None
        self.skip: Optional[int] = None
        self.order_by: Tuple[OrderBy, ...] = ()
        self.is_expanded = False
        self.expand: Optional[Expand] = None

        self._next_ordinal = 0

    def __repr__(self) -> str:
        """Return a short description of the node."""
        return (
            f"PathNode({self.component_id}, {repr(self.full_path)}, {self.element_type}, "
            f"collection={self.is_collection}, sub_select={self.is_sub_select}, "
            f"reverse={self.reverse})"
        )

    @property
    def parent(self) -> Optional["PathNode"]:
        """Return the parent node, None for the root."""
        if self._parent is None:
            return None
        return self._parent()

    @property
    def is_root(self) -> bool:
        """Return True for the root node of a tree."""
        return self._parent is None

    @property
    def segment(self) -> str:
        """Return the path segment of this node as it appears in a full path."""
        if self.reverse:
            return REVERSE_PATH_PREFIX + self.path
        if self.is_sub_select:
            return f"{SUB_SELECT_PATH_PREFIX}{self.component_id}:{self.path}"
        return self.path

    @property
    def full_path(self) -> str:
        """Return the path from the root to this node, empty for the root."""
        segments = []
        node: Optional[PathNode] = self
        while node is not None and not node.is_root:
            segments.append(node.segment)
            node = node.parent
        return PATH_SEPARATOR.join(reversed(segments))

    @property
    def depth(self) -> int:
        """Return the number of steps between the root and this node."""
        return len(self.component_id.split(".")) - 1

    def set_configuration(
        self, top: Optional[int], skip: Optional[int], order_by: Tuple[OrderBy, ...]
    ) -> None:
        """Set the paging and ordering applied to this branch when it is materialized."""
        self.top = top
        self.skip = skip
        self.order_by = order_by

    def find_child(self, segment: str) -> Optional["PathNode"]:
        """Return the inline forward child with the given navigation name, case-insensitively.

        Sub-select children belong to a single quantified predicate and are never returned.
        """
        lowered = segment.lower()
        for child in self.children:
            if not child.reverse and not child.is_sub_select and child.path.lower() == lowered:
                return child
        return None

    def find_reverse_child(self, segment: str, element_type: str) -> Optional["PathNode"]:
        """Return the reverse child reached through the given member of the given type."""
        lowered = segment.lower()
        for child in self.children:
            if (
                child.reverse
                and child.element_type == element_type
                and child.path.lower() == lowered
            ):
                return child
        return None

    def next_component_id(self) -> str:
        """Allocate the component id of a new child."""
        component_id = f"{self.component_id}.{self._next_ordinal}"
        self._next_ordinal += 1
        return component_id

    def iter_ancestors(self) -> Iterator["PathNode"]:
        """Yield the parent, grandparent and so on up to the root."""
        node = self.parent
        while node is not None:
            yield node
            node = node.parent


class PathTree:
    """The node tree of one request, aligned against the registered type metadata."""

    def __init__(self, metadata: TypeMetadata, root_type: str) -> None:
        """Create a tree holding only the root node."""
        metadata.descriptor(root_type)
        self.metadata = metadata
        self.root = PathNode(root_type)
        self._nodes: Dict[str, PathNode] = {self.root.component_id: self.root}

    def _add_child(
        self, parent: PathNode, element_type: str, path: str, is_collection: bool, reverse: bool
    ) -> PathNode:
        child = PathNode(
            element_type,
            path=path,
            parent=parent,
            is_collection=is_collection,
            reverse=reverse,
            component_id=parent.next_component_id(),
        )
        parent.children.append(child)
        self._nodes[child.component_id] = child
        return child

    def align(self, node: PathNode, path: str) -> PathNode:
        """Return the node reached from the given node through the path, creating missing steps.

        Args:
            node: node the path is relative to.
            path: navigation path, e.g. "Lines/Product". An empty path aligns to the node itself.

        Returns:
            the node of the final step. Every step along the path is joined inline.

        Raises:
            ConfigurationError: if a step is not a navigation member of the type it applies to.
        """
        current = node
        for segment in split_path(path):
            child = current.find_child(segment)
            if child is None:
                navigation = self.metadata.locate_property_type(current.element_type, segment)
                child = self._add_child(
                    current,
                    navigation.target,
                    navigation.name,
                    navigation.is_collection,
                    reverse=False,
                )
            current = child
        return current

    def add_sub_select(self, node: PathNode, member: str) -> PathNode:
        """Return a new child of the node for a quantified predicate over the navigation member.

        The child is evaluated as a correlated subselect. Each call creates a distinct node that
        inline alignment never reuses.
        """
        navigation = self.metadata.locate_property_type(node.element_type, member)
        child = self._add_child(
            node, navigation.target, navigation.name, navigation.is_collection, reverse=False
        )
        child.is_sub_select = True
        return child

    def align_reverse(self, node: PathNode, member: str, element_type: str) -> PathNode:
        """Return the child of the node that leads back to an ancestor of the given type.

        The ancestor type declares the navigation member leading to the type of the given node.
        """
        child = node.find_reverse_child(member, element_type)
        if child is not None:
            return child

        navigation = self.metadata.locate_property_type(element_type, member)
        if not self.metadata.is_assignable_from(navigation.target, node.element_type):
            raise ConfigurationError(
                f"Member {member} of type {element_type} leads to type {navigation.target}, "
                f"which is not compatible with type {node.element_type}."
            )
        return self._add_child(node, element_type, navigation.name, False, reverse=True)

    def remove(self, node: PathNode) -> None:
        """Remove a leaf node from the tree."""
        parent = node.parent
        if parent is None or node.children:
            raise AssertionError(f"Only non-root leaf nodes can be removed, got {node}.")
        parent.children.remove(node)
        del self._nodes[node.component_id]

    def node_by_id(self, component_id: str) -> PathNode:
        """Return the node with the given component id."""
        return self._nodes[component_id]

    def find(self, full_path: str) -> Optional[PathNode]:
        """Return the node with the given full path, without creating any node."""
        for node in self._nodes.values():
            if node.full_path == full_path:
                return node
        return None

    def iter_breadth_first(
        self, start: Optional[PathNode] = None, include_sub_selects: bool = True
    ) -> Iterator[PathNode]:
        """Yield the nodes below the start node (itself included) in breadth-first order.

        When sub-selects are excluded, neither sub-select nodes nor their descendants are yielded.
        """
        queue: Deque[PathNode] = deque([start or self.root])
        while queue:
            node = queue.popleft()
            yield node
            for child in node.children:
                if include_sub_selects or not child.is_sub_select:
                    queue.append(child)

    def edges(
        self, start: Optional[PathNode] = None, include_sub_selects: bool = False
    ) -> List[Tuple[PathNode, PathNode]]:
        """Return the (parent, child) pairs below the start node, in breadth-first order."""
        return [
            (node, child)
            for node in self.iter_breadth_first(start, include_sub_selects)
            for child in node.children
            if include_sub_selects or not child.is_sub_select
        ]
