# Copyright 2019-present Kensho Technologies, LLC.
"""Build entity descriptors from SQLAlchemy Table objects."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Type
import warnings

from sqlalchemy import Table
import sqlalchemy.sql.sqltypes as sqltypes
from sqlalchemy.sql.type_api import TypeEngine

from ..exceptions import ConfigurationError
from .descriptors import EntityDescriptor, NavigationDescriptor, PropertyDescriptor


# Subclasses are matched through their method resolution order, so the generic classes
# also cover the all-caps SQL standard types deriving from them.
GENERIC_SQL_CLASS_TO_PYTHON_TYPE: Mapping[Type[TypeEngine], Type] = {
    sqltypes.Boolean: bool,
    sqltypes.Integer: int,
    sqltypes.Float: float,
    sqltypes.Numeric: Decimal,
    sqltypes.String: str,
    sqltypes.Enum: str,
    sqltypes.DateTime: datetime,
    sqltypes.Date: date,
}


def try_get_python_type(name: str, column_type: TypeEngine) -> Optional[Type]:
    """Return the python type matching the column type, warning if there is none."""
    for klass in type(column_type).__mro__:
        # Float derives from Numeric, so exact classes are checked before their bases.
        python_type = GENERIC_SQL_CLASS_TO_PYTHON_TYPE.get(klass)
        if python_type is not None:
            return python_type
    warnings.warn(
        f'Ignoring the type of column "{name}" with unsupported SQL type {type(column_type)}.'
    )
    return None


def validate_that_tables_have_primary_keys(tables: Iterable[Table]) -> None:
    """Validate that each SQLAlchemy Table object has a primary key."""
    tables_missing_primary_keys = {table.fullname for table in tables if not table.primary_key}
    if tables_missing_primary_keys:
        raise ConfigurationError(
            f"At least one SQLAlchemy Table is missing a primary key. The primary key of an "
            f"entity table must be a unique and non-null identifier of each row. Tables missing "
            f"primary keys: {tables_missing_primary_keys}"
        )


def _get_foreign_key_navigation(
    entity_name: str,
    column: Any,
    table_to_entity_name: Mapping[str, str],
    navigations: Sequence[NavigationDescriptor],
) -> Optional[str]:
    """Return the scalar navigation implemented by the foreign key column, if there is one."""
    for foreign_key in column.foreign_keys:
        target_entity = table_to_entity_name.get(foreign_key.column.table.fullname)
        if target_entity is None:
            continue
        matches = [
            navigation.name
            for navigation in navigations
            if navigation.target == target_entity and not navigation.is_collection
        ]
        if len(matches) > 1:
            raise ConfigurationError(
                f"Foreign key column {column.name} of entity {entity_name} is ambiguous between "
                f"the navigations {matches}. Annotate the properties explicitly instead."
            )
        if matches:
            return matches[0]
    return None


def get_entity_descriptors_from_tables(
    entity_name_to_table: Mapping[str, Table],
    entity_name_to_navigations: Optional[Mapping[str, Sequence[NavigationDescriptor]]] = None,
    entity_name_to_factory: Optional[Mapping[str, Callable[[], Any]]] = None,
) -> List[EntityDescriptor]:
    """Return one entity descriptor per table.

    Args:
        entity_name_to_table: dict, entity name -> SQLAlchemy Table. The properties of each entity
                              are inferred from the columns of its table, with the same names.
                              Primary key columns become the keys of the entity.
        entity_name_to_navigations: optional dict, entity name -> navigation descriptors. A column
                                    with a foreign key to the table of another entity is marked as
                                    implementing the scalar navigation leading to that entity.
        entity_name_to_factory: optional dict, entity name -> callable building empty instances.

    Returns:
        list of EntityDescriptors, one per table, in the order of the given dict.
    """
    validate_that_tables_have_primary_keys(entity_name_to_table.values())
    navigations_by_entity: Mapping[str, Sequence[NavigationDescriptor]] = (
        entity_name_to_navigations or {}
    )
    factories: Mapping[str, Callable[[], Any]] = entity_name_to_factory or {}
    table_to_entity_name: Dict[str, str] = {
        table.fullname: entity_name for entity_name, table in entity_name_to_table.items()
    }

    descriptors = []
    for entity_name, table in entity_name_to_table.items():
        navigations = tuple(navigations_by_entity.get(entity_name, ()))
        properties = tuple(
            PropertyDescriptor(
                name=column.key,
                element_type=try_get_python_type(column.key, column.type),
                column_name=column.name if column.name != column.key else None,
                is_key=column.primary_key,
                nullable=bool(column.nullable),
                size=getattr(column.type, "length", None),
                computed=column.computed is not None,
                foreign_key=_get_foreign_key_navigation(
                    entity_name, column, table_to_entity_name, navigations
                ),
            )
            for column in table.columns
        )
        descriptors.append(
            EntityDescriptor(
                name=entity_name,
                properties=properties,
                navigations=navigations,
                table_name=table.fullname,
                factory=factories.get(entity_name),
            )
        )
    return descriptors
