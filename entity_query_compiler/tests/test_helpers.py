# Copyright 2017-present Kensho Technologies, LLC.
"""Common test data and helper functions."""
from types import SimpleNamespace
from typing import Any, Dict, List, Mapping, Tuple

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
)
from sqlalchemy.engine import Engine

from ..query_plan import SelectQuery
from ..schema import EntityDescriptor, NavigationDescriptor, PropertyDescriptor, TypeMetadata


def _key(name: str = "Id") -> PropertyDescriptor:
    return PropertyDescriptor(name, int, is_key=True, nullable=False)


def get_test_entity_descriptors() -> List[EntityDescriptor]:
    """Return the entity types of the test schema.

    Customers place orders made of lines, each line refers to a product, products are tagged
    through a link table, and customers own pets, which are either dogs or cats.
    """
    return [
        EntityDescriptor(
            "Customer",
            properties=(_key(), PropertyDescriptor("Name")),
            navigations=(
                NavigationDescriptor("Orders", "Order", is_collection=True),
                NavigationDescriptor("Pets", "Animal", is_collection=True),
            ),
            table_name="customers",
        ),
        EntityDescriptor(
            "Order",
            properties=(
                _key(),
                PropertyDescriptor("Number"),
                PropertyDescriptor("CustomerId", int, foreign_key="Customer"),
            ),
            navigations=(
                NavigationDescriptor("Customer", "Customer"),
                NavigationDescriptor("Lines", "OrderLine", is_collection=True),
                NavigationDescriptor("Notes", "Note", is_collection=True),
            ),
            table_name="orders",
        ),
        EntityDescriptor(
            "OrderLine",
            properties=(
                _key(),
                PropertyDescriptor("OrderId", int, foreign_key="Order"),
                PropertyDescriptor("Sku"),
                PropertyDescriptor("Price", float),
                PropertyDescriptor("Quantity", int),
                PropertyDescriptor("ProductId", int, foreign_key="Product"),
                PropertyDescriptor("CategoryId", int),
            ),
            navigations=(
                NavigationDescriptor("Order", "Order"),
                NavigationDescriptor("Product", "Product"),
            ),
            table_name="order_lines",
            dynamic_property_bag="Extra",
        ),
        EntityDescriptor(
            "Note",
            properties=(
                _key(),
                PropertyDescriptor("OrderId", int, foreign_key="Order"),
                PropertyDescriptor("Text"),
            ),
            navigations=(NavigationDescriptor("Order", "Order"),),
            table_name="notes",
        ),
        EntityDescriptor(
            "Product",
            properties=(_key(), PropertyDescriptor("Name")),
            navigations=(NavigationDescriptor("Tags", "Tag", is_collection=True),),
            table_name="products",
        ),
        EntityDescriptor(
            "Tag",
            properties=(_key(), PropertyDescriptor("Label")),
            table_name="tags",
        ),
        EntityDescriptor(
            "Animal",
            properties=(
                _key(),
                PropertyDescriptor("Name"),
                PropertyDescriptor("OwnerId", int, foreign_key="Owner"),
            ),
            navigations=(NavigationDescriptor("Owner", "Customer"),),
            table_name="animals",
            is_abstract=True,
        ),
        EntityDescriptor(
            "Dog",
            properties=(PropertyDescriptor("Breed"),),
            table_name="dogs",
            base_type="Animal",
        ),
        EntityDescriptor(
            "Cat",
            properties=(PropertyDescriptor("Lives", int),),
            table_name="cats",
            base_type="Animal",
            factory=SimpleNamespace,
        ),
    ]


def get_test_type_metadata() -> TypeMetadata:
    """Return the type metadata of the test schema, with its link table registered."""
    metadata = TypeMetadata(get_test_entity_descriptors())
    metadata.register_many_to_many_override(
        "Product", "Tags", "product_tags", ["product_id"], ["tag_id"]
    )
    return metadata


def get_sqlalchemy_metadata() -> MetaData:
    """Return the SQLAlchemy tables backing the test schema."""
    sqlalchemy_metadata = MetaData()
    Table(
        "customers",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("Name", String(50)),
    )
    Table(
        "orders",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("Number", String(20)),
        Column("CustomerId", Integer, ForeignKey("customers.Id")),
    )
    Table(
        "order_lines",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("OrderId", Integer, ForeignKey("orders.Id")),
        Column("Sku", String(20)),
        Column("Price", Float),
        Column("Quantity", Integer),
        Column("ProductId", Integer, ForeignKey("products.Id")),
        Column("CategoryId", Integer),
    )
    Table(
        "notes",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("OrderId", Integer, ForeignKey("orders.Id")),
        Column("Text", String(100)),
    )
    Table(
        "products",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("Name", String(50)),
    )
    Table(
        "tags",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("Label", String(20)),
    )
    Table(
        "product_tags",
        sqlalchemy_metadata,
        Column("product_id", Integer, ForeignKey("products.Id"), primary_key=True),
        Column("tag_id", Integer, ForeignKey("tags.Id"), primary_key=True),
    )
    Table(
        "animals",
        sqlalchemy_metadata,
        Column("Id", Integer, primary_key=True),
        Column("Name", String(50)),
        Column("OwnerId", Integer, ForeignKey("customers.Id")),
    )
    Table(
        "dogs",
        sqlalchemy_metadata,
        Column("Id", Integer, ForeignKey("animals.Id"), primary_key=True),
        Column("Breed", String(50)),
    )
    Table(
        "cats",
        sqlalchemy_metadata,
        Column("Id", Integer, ForeignKey("animals.Id"), primary_key=True),
        Column("Lives", Integer),
    )
    return sqlalchemy_metadata


TEST_DATA: Mapping[str, List[Tuple[Any, ...]]] = {
    "customers": [(1, "Ada"), (2, "Grace")],
    "orders": [
        (1, "A-1", 1),
        (2, "A-2", 1),
        (3, "B-1", 2),
        (4, "B-2", 2),
        (5, "B-3", 2),
    ],
    "order_lines": [
        (1, 1, "X", 10.0, 2, 1, 1),
        (2, 1, "Y", 5.0, 1, 2, 2),
        (3, 2, "X", 10.0, 1, 1, 1),
        (4, 3, "Z", 2.5, 4, 3, 2),
    ],
    "notes": [(1, 1, "fragile"), (2, 1, "gift"), (3, 3, "rush")],
    "products": [(1, "Widget"), (2, "Gadget"), (3, "Gizmo")],
    "tags": [(1, "new"), (2, "sale")],
    "product_tags": [(1, 1), (1, 2), (2, 2)],
    "animals": [(1, "Rex", 1), (2, "Tom", 1), (3, "Fido", 2)],
    "dogs": [(1, "Collie"), (3, "Pug")],
    "cats": [(2, 9)],
}


def create_sqlite_db() -> Tuple[Engine, MetaData]:
    """Create an in-memory sqlite database holding the test data."""
    engine = create_engine("sqlite://")
    sqlalchemy_metadata = get_sqlalchemy_metadata()
    sqlalchemy_metadata.create_all(engine)
    with engine.begin() as connection:
        for table_name, rows in TEST_DATA.items():
            table = sqlalchemy_metadata.tables[table_name]
            column_names = [column.name for column in table.columns]
            connection.execute(
                table.insert(), [dict(zip(column_names, row)) for row in rows]
            )
    return engine, sqlalchemy_metadata


def make_row(plan: SelectQuery, values_by_path: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a raw row of the plan, given the member values of each node path of the row.

    Columns of nodes or members without a given value are NULL.
    """
    return {
        column.alias: values_by_path.get(column.path, {}).get(column.member)
        for column in plan.all_columns
    }
