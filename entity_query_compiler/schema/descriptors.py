# Copyright 2019-present Kensho Technologies, LLC.
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

from ..global_utils import is_system_name


@dataclass(frozen=True)
class PropertyDescriptor:
    """A scalar member of an entity type, stored in a column of the type's table."""

    name: str
    element_type: Optional[Type] = str
    column_name: Optional[str] = None  # Name of the column, if it differs from the member name.
    is_key: bool = False
    nullable: bool = True
    size: Optional[int] = None
    computed: bool = False
    # Name of the navigation member whose relation this column implements, if any.
    foreign_key: Optional[str] = None
    # Columns that exist only to join on, registered through a join override.
    is_supplemental: bool = False

    @property
    def storage_name(self) -> str:
        """Return the name of the backing column."""
        return self.column_name or self.name


@dataclass(frozen=True)
class NavigationDescriptor:
    """A member of an entity type that leads to one or many entities of the target type."""

    name: str
    target: str
    is_collection: bool = False


@dataclass(frozen=True)
class EntityDescriptor:
    """Everything known about an entity type, registered once at startup."""

    name: str
    properties: Tuple[PropertyDescriptor, ...] = ()
    navigations: Tuple[NavigationDescriptor, ...] = ()
    # Table holding the members declared by this type. Abstract types may have none.
    table_name: Optional[str] = None
    base_type: Optional[str] = None
    is_abstract: bool = False
    # Builds an empty instance to materialize rows into. Defaults to a dict.
    factory: Optional[Callable[[], Any]] = None
    # Attribute receiving columns without a matching member, e.g. aggregate aliases.
    dynamic_property_bag: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate fields."""
        member_names = [prop.name.lower() for prop in self.properties] + [
            navigation.name.lower() for navigation in self.navigations
        ]
        if len(member_names) != len(set(member_names)):
            raise AssertionError(f"Member names of type {self.name} are not unique: {member_names}")
        for member_name in member_names:
            if is_system_name(member_name):
                raise AssertionError(
                    f"Member {member_name} of type {self.name} uses the reserved system prefix."
                )


@dataclass(frozen=True)
class IntermediateTable:
    """The link table of a many-to-many relation."""

    name: str
    left_column: str  # References the key of the declaring (left) type.
    right_column: str  # References the key of the target (right) type.


@dataclass(frozen=True)
class JoinOverride:
    """Join columns registered explicitly for one navigation member."""

    left_columns: Tuple[str, ...]
    right_columns: Tuple[str, ...]
    intermediate: Optional[IntermediateTable] = None


@dataclass(frozen=True)
class JoinResolution:
    """The equi-join key pairs between two entity types, in declaration order."""

    left_columns: Tuple[str, ...]
    right_columns: Tuple[str, ...]
    intermediate: Optional[IntermediateTable] = None

    def __post_init__(self) -> None:
        """Validate fields."""
        if not self.left_columns or len(self.left_columns) != len(self.right_columns):
            raise AssertionError(
                f"Expected a non-empty and equal number of join columns on both sides, got "
                f"{self.left_columns} and {self.right_columns}."
            )

    @property
    def column_pairs(self) -> Tuple[Tuple[str, str], ...]:
        """Return the (left, right) key pairs."""
        return tuple(zip(self.left_columns, self.right_columns))

    def inverted(self) -> "JoinResolution":
        """Return the same relation traversed in the opposite direction."""
        intermediate = self.intermediate
        if intermediate is not None:
            intermediate = IntermediateTable(
                intermediate.name, intermediate.right_column, intermediate.left_column
            )
        return JoinResolution(self.right_columns, self.left_columns, intermediate)
