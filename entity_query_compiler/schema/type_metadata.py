# Copyright 2019-present Kensho Technologies, LLC.
"""Read-mostly registry of entity types, their columns, inheritance and join keys."""
import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..exceptions import ConfigurationError, DataInconsistencyError
from ..global_utils import TYPE_NAME_COLUMN
from ..query_plan import Column, LiteralValue, Source, TableSource
from .descriptors import (
    EntityDescriptor,
    IntermediateTable,
    JoinOverride,
    JoinResolution,
    NavigationDescriptor,
    PropertyDescriptor,
)
from .join_resolution import infer_join


if TYPE_CHECKING:
    from ..path_tree import PathNode  # noqa  # pylint: disable=cyclic-import


logger = logging.getLogger(__name__)


class TypeMetadata:
    """Type descriptors registered at startup, plus caches derived from them.

    All reads are safe from many threads at once. Join overrides may be registered after
    construction; registration takes a lock and clears the derived caches.
    """

    def __init__(self, descriptors: Iterable[EntityDescriptor]) -> None:
        """Register all entity types and validate the references between them."""
        self._lock = threading.RLock()
        self._descriptors: Dict[str, EntityDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                raise ConfigurationError(f"Entity type {descriptor.name} was registered twice.")
            self._descriptors[descriptor.name] = descriptor

        self._overrides: Dict[Tuple[str, str], JoinOverride] = {}
        self._supplemental: Dict[str, List[PropertyDescriptor]] = {}
        # Type name -> (all properties, property name -> declaring type name)
        self._properties_cache: Dict[
            str, Tuple[Tuple[PropertyDescriptor, ...], Dict[str, str]]
        ] = {}

        self._validate()
        self._subtypes = {
            type_name: tuple(
                candidate
                for candidate in self._descriptors
                if candidate != type_name and type_name in self.base_chain(candidate)
            )
            for type_name in self._descriptors
        }

    def _validate(self) -> None:
        for descriptor in self._descriptors.values():
            if descriptor.base_type is not None and descriptor.base_type not in self._descriptors:
                raise ConfigurationError(
                    f"Type {descriptor.name} derives from unknown type {descriptor.base_type}."
                )
            chain = [descriptor.name]
            current = descriptor.base_type
            while current is not None:
                if current in chain:
                    raise ConfigurationError(f"Inheritance cycle between types {chain}.")
                chain.append(current)
                current = self._descriptors[current].base_type

        for descriptor in self._descriptors.values():
            navigation_names = {navigation.name for navigation in self.navigations(descriptor.name)}
            for navigation in descriptor.navigations:
                if navigation.target not in self._descriptors:
                    raise ConfigurationError(
                        f"Navigation {navigation.name} of type {descriptor.name} leads to unknown "
                        f"type {navigation.target}."
                    )
            for prop in descriptor.properties:
                if prop.foreign_key is not None and prop.foreign_key not in navigation_names:
                    raise ConfigurationError(
                        f"Foreign key {prop.name} of type {descriptor.name} refers to unknown "
                        f"navigation {prop.foreign_key}."
                    )
                if prop.is_key and descriptor.base_type is not None:
                    raise ConfigurationError(
                        f"Key {prop.name} must be declared on the root of the hierarchy of type "
                        f"{descriptor.name}."
                    )

    # Types and inheritance

    def descriptor(self, type_name: str) -> EntityDescriptor:
        """Return the descriptor registered for the type."""
        descriptor = self._descriptors.get(type_name)
        if descriptor is None:
            raise ConfigurationError(f"Unknown entity type {type_name}.")
        return descriptor

    def base_chain(self, type_name: str) -> List[str]:
        """Return the type followed by its base types, most derived first."""
        chain = []
        current: Optional[str] = type_name
        while current is not None:
            chain.append(current)
            current = self.descriptor(current).base_type
        return chain

    def subtypes(self, type_name: str) -> Tuple[str, ...]:
        """Return every type deriving from the given type, directly or transitively."""
        self.descriptor(type_name)
        return self._subtypes[type_name]

    def concrete_subtypes(self, type_name: str) -> List[str]:
        """Return the derived types that can have instances of their own."""
        return [
            subtype
            for subtype in self.subtypes(type_name)
            if not self.descriptor(subtype).is_abstract
        ]

    def is_assignable_from(self, base_type: str, derived_type: str) -> bool:
        """Return True if an instance of derived_type can stand in for base_type."""
        return base_type in self.base_chain(derived_type)

    def has_discriminator(self, type_name: str) -> bool:
        """Return True if rows of this type need a column naming their concrete type."""
        descriptor = self.descriptor(type_name)
        return (
            descriptor.is_abstract
            or descriptor.base_type is not None
            or bool(self.subtypes(type_name))
        )

    # Members

    def navigations(self, type_name: str) -> List[NavigationDescriptor]:
        """Return the navigation members of the type, including inherited ones."""
        return [
            navigation
            for chain_type in reversed(self.base_chain(type_name))
            for navigation in self.descriptor(chain_type).navigations
        ]

    def declared_properties(self, type_name: str) -> List[PropertyDescriptor]:
        """Return the properties stored in the type's own table: keys, own members, supplements."""
        descriptor = self.descriptor(type_name)
        stored = list(descriptor.properties)
        if descriptor.base_type is not None:
            root_type = self.base_chain(type_name)[-1]
            root_keys = [prop for prop in self.descriptor(root_type).properties if prop.is_key]
            stored = root_keys + stored
        return stored + list(self._supplemental.get(type_name, []))

    def properties(self, type_name: str) -> Tuple[PropertyDescriptor, ...]:
        """Return all properties of the type, inherited ones first."""
        return self._resolve_properties(type_name)[0]

    def _resolve_properties(
        self, type_name: str
    ) -> Tuple[Tuple[PropertyDescriptor, ...], Dict[str, str]]:
        cached = self._properties_cache.get(type_name)
        if cached is not None:
            return cached

        with self._lock:
            result = []
            declaring_types: Dict[str, str] = {}
            for chain_type in reversed(self.base_chain(type_name)):
                for prop in self.declared_properties(chain_type):
                    if prop.name not in declaring_types:
                        declaring_types[prop.name] = chain_type
                        result.append(prop)
            cached = (tuple(result), declaring_types)
            self._properties_cache[type_name] = cached
        return cached

    def declaring_type(self, type_name: str, property_name: str) -> str:
        """Return the type in the hierarchy whose table stores the property."""
        return self._resolve_properties(type_name)[1][property_name]

    def keys(self, type_name: str) -> List[str]:
        """Return the names of the key properties of the type."""
        return [prop.name for prop in self.properties(type_name) if prop.is_key]

    def find_property(self, type_name: str, name: str) -> Optional[PropertyDescriptor]:
        """Return the property with the given name, matched case-insensitively."""
        lowered = name.lower()
        for prop in self.properties(type_name):
            if prop.name.lower() == lowered:
                return prop
        return None

    def find_navigation(self, type_name: str, name: str) -> Optional[NavigationDescriptor]:
        """Return the navigation with the given name, matched case-insensitively."""
        lowered = name.lower()
        for navigation in self.navigations(type_name):
            if navigation.name.lower() == lowered:
                return navigation
        return None

    def check_is_legal_column(self, type_name: str, name: str) -> PropertyDescriptor:
        """Return the property the name refers to, or raise if it is not a column of the type."""
        prop = self.find_property(type_name, name)
        if prop is not None:
            return prop
        if self.find_navigation(type_name, name) is not None:
            raise ConfigurationError(
                f"Member {name} of type {type_name} is a navigation property, not a column."
            )
        raise ConfigurationError(f"Property {name} is not a member of type {type_name}.")

    def locate_property_type(self, type_name: str, name: str) -> NavigationDescriptor:
        """Return the navigation a path step refers to, or raise if it is not one."""
        navigation = self.find_navigation(type_name, name)
        if navigation is not None:
            return navigation
        if self.find_property(type_name, name) is not None:
            raise ConfigurationError(
                f"Member {name} of type {type_name} is a scalar property and cannot be navigated."
            )
        raise ConfigurationError(f"Navigation {name} is not a member of type {type_name}.")

    def create_columns(
        self,
        type_name: str,
        source: Source,
        path: str,
        properties: Optional[Sequence[PropertyDescriptor]] = None,
    ) -> List[Column]:
        """Create the columns a source offers for the type.

        Args:
            type_name: entity type whose rows the source holds.
            source: the source the columns belong to.
            path: full path of the node the source materializes.
            properties: the properties to create columns for, all properties of the type if None.

        Returns:
            list of columns, followed by the discriminator column if the type needs one. Columns
            of tables are named after their storage columns, columns of nested sources after the
            aliases those sources expose.
        """
        is_table = isinstance(source, TableSource)
        if properties is None:
            properties = self.properties(type_name)

        columns = [
            Column(
                name=prop.storage_name if is_table else prop.name,
                alias=prop.name,
                source=source,
                element_type=prop.element_type,
                path=path,
                is_key=prop.is_key,
                nullable=prop.nullable,
                size=prop.size,
                computed=prop.computed,
                declaring_type=self.declaring_type(type_name, prop.name),
                is_supplemental=prop.is_supplemental,
            )
            for prop in properties
        ]
        if self.has_discriminator(type_name):
            columns.append(
                Column(
                    name=TYPE_NAME_COLUMN,
                    alias=TYPE_NAME_COLUMN,
                    source=source,
                    element_type=str,
                    path=path,
                    nullable=False,
                    declaring_type=type_name,
                    is_system=True,
                    expression=LiteralValue(type_name) if is_table else None,
                )
            )
        return columns

    # Joins

    def _find_override(self, type_name: str, member: str) -> Optional[JoinOverride]:
        lowered = member.lower()
        for chain_type in self.base_chain(type_name):
            for (declaring_type, override_member), override in self._overrides.items():
                if declaring_type == chain_type and override_member.lower() == lowered:
                    return override
        return None

    def resolve_join(
        self, parent_type: str, member: str, child_type: Optional[str] = None
    ) -> JoinResolution:
        """Return the join keys between the parent type and the type reached through member.

        Explicit overrides registered for the member, on the type or any of its bases, win over
        the key inference heuristics.
        """
        navigation = self.locate_property_type(parent_type, member)
        if child_type is None:
            child_type = navigation.target

        override = self._find_override(parent_type, navigation.name)
        if override is not None:
            return JoinResolution(
                override.left_columns, override.right_columns, override.intermediate
            )
        return infer_join(self, parent_type, navigation.name, child_type, navigation.is_collection)

    def resolve_node_join(self, parent_node: "PathNode", child_node: "PathNode") -> JoinResolution:
        """Return the join keys for a tree edge, left columns belonging to the parent node."""
        if child_node.reverse:
            # The child declares the member that leads back to the parent.
            return self.resolve_join(
                child_node.element_type, child_node.path, parent_node.element_type
            ).inverted()
        return self.resolve_join(parent_node.element_type, child_node.path, child_node.element_type)

    def _add_supplemental_columns(self, type_name: str, names: Sequence[str]) -> None:
        for name in names:
            if self.find_property(type_name, name) is None:
                self._supplemental.setdefault(type_name, []).append(
                    PropertyDescriptor(name, element_type=None, is_supplemental=True)
                )

    def _register_override(self, declaring_type: str, member: str, override: JoinOverride) -> None:
        key = (declaring_type, member)
        if key in self._overrides:
            logger.warning(
                "Replacing the join override of %s.%s: %s -> %s",
                declaring_type,
                member,
                self._overrides[key],
                override,
            )
        self._overrides[key] = override
        self._properties_cache.clear()
        logger.debug("Registered join override for %s.%s: %s", declaring_type, member, override)

    def register_join_override(
        self,
        declaring_type: str,
        member: str,
        left_columns: Sequence[str],
        right_columns: Sequence[str],
    ) -> None:
        """Register the join columns of a navigation member, bypassing key inference.

        Column names that are not properties of their type are added as supplemental columns,
        available for joining but never part of the output.
        """
        if not left_columns or len(left_columns) != len(right_columns):
            raise ConfigurationError(
                f"Join override for {declaring_type}.{member} must name the same non-zero number "
                f"of columns on both sides, got {left_columns} and {right_columns}."
            )
        with self._lock:
            navigation = self.locate_property_type(declaring_type, member)
            self._add_supplemental_columns(declaring_type, left_columns)
            self._add_supplemental_columns(navigation.target, right_columns)
            self._register_override(
                declaring_type,
                navigation.name,
                JoinOverride(tuple(left_columns), tuple(right_columns)),
            )

    def register_many_to_many_override(
        self,
        declaring_type: str,
        member: str,
        intermediate_table: str,
        left_columns: Sequence[str],
        right_columns: Sequence[str],
    ) -> None:
        """Register a navigation member that goes through a link table.

        Args:
            declaring_type: type declaring the navigation member.
            member: name of the navigation member.
            intermediate_table: name of the link table.
            left_columns: link table column referencing the key of the declaring type.
            right_columns: link table column referencing the key of the target type.

        Raises:
            ConfigurationError: if either side names more than one column, or either type does
                                not have exactly one key.
        """
        if len(left_columns) != 1 or len(right_columns) != 1:
            raise ConfigurationError(
                f"Many-to-many override for {declaring_type}.{member} only supports single column "
                f"relations, got {left_columns} and {right_columns}."
            )
        with self._lock:
            navigation = self.locate_property_type(declaring_type, member)
            left_keys = self.keys(declaring_type)
            right_keys = self.keys(navigation.target)
            if len(left_keys) != 1 or len(right_keys) != 1:
                raise ConfigurationError(
                    f"Many-to-many override for {declaring_type}.{member} requires single column "
                    f"keys on both sides, got {left_keys} and {right_keys}."
                )
            intermediate = IntermediateTable(intermediate_table, left_columns[0], right_columns[0])
            self._register_override(
                declaring_type,
                navigation.name,
                JoinOverride(tuple(left_keys), tuple(right_keys), intermediate),
            )

    # Materialization

    def locate_type(self, discriminator: str) -> str:
        """Return the registered type a discriminator value names."""
        if discriminator not in self._descriptors:
            raise DataInconsistencyError(
                f"Discriminator value {repr(discriminator)} does not name a registered type."
            )
        return discriminator

    def create_instance(self, type_name: str) -> Any:
        """Create an empty instance of the type to materialize a row into."""
        factory = self.descriptor(type_name).factory
        if factory is None:
            return {}
        return factory()

    def dynamic_property_bag(self, type_name: str) -> Optional[str]:
        """Return the attribute receiving unmatched columns, if the type has one."""
        for chain_type in self.base_chain(type_name):
            bag = self.descriptor(chain_type).dynamic_property_bag
            if bag is not None:
                return bag
        return None
