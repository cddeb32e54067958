# Copyright 2019-present Kensho Technologies, LLC.
from types import SimpleNamespace
import unittest

from ..exceptions import ConfigurationError, DataInconsistencyError
from ..global_utils import TYPE_NAME_COLUMN
from ..query_plan import LiteralValue, SelectQuery, TableSource
from ..schema import EntityDescriptor, NavigationDescriptor, PropertyDescriptor, TypeMetadata
from .test_helpers import get_test_type_metadata


def _key() -> PropertyDescriptor:
    return PropertyDescriptor("Id", int, is_key=True, nullable=False)


class TypeMetadataTests(unittest.TestCase):
    def setUp(self) -> None:
        self.maxDiff = None
        self.metadata = get_test_type_metadata()

    def test_inherited_properties(self) -> None:
        self.assertEqual(
            ["Id", "Name", "OwnerId", "Breed"],
            [prop.name for prop in self.metadata.properties("Dog")],
        )
        self.assertEqual(["Id"], self.metadata.keys("Dog"))
        self.assertEqual("Animal", self.metadata.declaring_type("Dog", "Id"))
        self.assertEqual("Animal", self.metadata.declaring_type("Dog", "Name"))
        self.assertEqual("Dog", self.metadata.declaring_type("Dog", "Breed"))

        # The table of a derived type stores the keys of its hierarchy as well
        self.assertEqual(
            ["Id", "Breed"], [prop.name for prop in self.metadata.declared_properties("Dog")]
        )
        self.assertEqual(["Owner"], [nav.name for nav in self.metadata.navigations("Cat")])

    def test_hierarchy(self) -> None:
        self.assertEqual(("Dog", "Cat"), self.metadata.subtypes("Animal"))
        self.assertEqual(["Dog", "Cat"], self.metadata.concrete_subtypes("Animal"))
        self.assertEqual((), self.metadata.subtypes("Order"))
        self.assertEqual(["Dog", "Animal"], self.metadata.base_chain("Dog"))

        self.assertTrue(self.metadata.is_assignable_from("Animal", "Cat"))
        self.assertFalse(self.metadata.is_assignable_from("Cat", "Animal"))
        self.assertFalse(self.metadata.is_assignable_from("Dog", "Cat"))

        self.assertTrue(self.metadata.has_discriminator("Animal"))
        self.assertTrue(self.metadata.has_discriminator("Dog"))
        self.assertFalse(self.metadata.has_discriminator("Order"))

    def test_member_lookup(self) -> None:
        prop = self.metadata.find_property("Order", "number")
        self.assertIsNotNone(prop)
        self.assertEqual("Number", prop.name)
        self.assertEqual("Lines", self.metadata.locate_property_type("Order", "LINES").name)
        self.assertEqual("Number", self.metadata.check_is_legal_column("Order", "Number").name)

        with self.assertRaises(ConfigurationError):
            self.metadata.check_is_legal_column("Order", "Lines")

        with self.assertRaises(ConfigurationError):
            self.metadata.check_is_legal_column("Order", "Missing")

        with self.assertRaises(ConfigurationError):
            self.metadata.locate_property_type("Order", "Number")

        with self.assertRaises(ConfigurationError):
            self.metadata.locate_property_type("Order", "Missing")

        with self.assertRaises(ConfigurationError):
            self.metadata.descriptor("Missing")

    def test_create_columns(self) -> None:
        table = TableSource("dogs", "Alias0", path="Pets")
        columns = self.metadata.create_columns("Dog", table, "Pets")
        self.assertEqual(
            ["Id", "Name", "OwnerId", "Breed", TYPE_NAME_COLUMN],
            [column.alias for column in columns],
        )
        self.assertTrue(all(column.source is table for column in columns))
        self.assertTrue(all(column.path == "Pets" for column in columns))
        self.assertTrue(columns[0].is_key)

        discriminator = columns[-1]
        self.assertTrue(discriminator.is_system)
        self.assertEqual(LiteralValue("Dog"), discriminator.literal)

        # Nested sources compute the discriminator themselves
        nested = SelectQuery(alias="Alias1")
        nested_columns = self.metadata.create_columns("Dog", nested, "")
        self.assertIsNone(nested_columns[-1].expression)

        order_columns = self.metadata.create_columns("Order", table, "")
        self.assertEqual(["Id", "Number", "CustomerId"], [column.name for column in order_columns])

    def test_storage_names(self) -> None:
        metadata = TypeMetadata(
            [
                EntityDescriptor(
                    "Order",
                    properties=(_key(), PropertyDescriptor("Number", column_name="order_no")),
                    table_name="orders",
                )
            ]
        )
        table = TableSource("orders", "Alias0")
        number = metadata.create_columns("Order", table, "")[1]
        self.assertEqual("order_no", number.name)
        self.assertEqual("Number", number.alias)

    def test_materialization_helpers(self) -> None:
        self.assertEqual("Cat", self.metadata.locate_type("Cat"))
        with self.assertRaises(DataInconsistencyError):
            self.metadata.locate_type("Parrot")

        self.assertEqual({}, self.metadata.create_instance("Order"))
        self.assertIsInstance(self.metadata.create_instance("Cat"), SimpleNamespace)

        self.assertEqual("Extra", self.metadata.dynamic_property_bag("OrderLine"))
        self.assertIsNone(self.metadata.dynamic_property_bag("Order"))

    def test_join_override(self) -> None:
        self.metadata.register_join_override("Order", "Notes", ["Id"], ["LegacyOrderRef"])

        resolution = self.metadata.resolve_join("Order", "Notes")
        self.assertEqual(("Id",), resolution.left_columns)
        self.assertEqual(("LegacyOrderRef",), resolution.right_columns)

        # Unknown override columns become supplemental columns of their type
        supplemental = self.metadata.find_property("Note", "LegacyOrderRef")
        self.assertIsNotNone(supplemental)
        self.assertTrue(supplemental.is_supplemental)
        self.assertIsNone(self.metadata.find_property("Order", "LegacyOrderRef"))

        with self.assertLogs("entity_query_compiler.schema.type_metadata", level="WARNING"):
            self.metadata.register_join_override("Order", "Notes", ["Id"], ["OrderId"])
        self.assertEqual(
            (("Id", "OrderId"),), self.metadata.resolve_join("Order", "Notes").column_pairs
        )

    def test_join_override_applies_to_subtypes(self) -> None:
        self.metadata.register_join_override("Animal", "Owner", ["OwnerId"], ["Id"])
        resolution = self.metadata.resolve_join("Dog", "owner")
        self.assertEqual((("OwnerId", "Id"),), resolution.column_pairs)

    def test_invalid_join_overrides(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.metadata.register_join_override("Order", "Notes", ["Id"], [])

        with self.assertRaises(ConfigurationError):
            self.metadata.register_join_override("Order", "Number", ["Id"], ["OrderId"])

        with self.assertRaises(ConfigurationError):
            self.metadata.register_many_to_many_override(
                "Product", "Tags", "product_tags", ["product_id", "extra"], ["tag_id"]
            )

    def test_many_to_many_override(self) -> None:
        resolution = self.metadata.resolve_join("Product", "Tags")
        self.assertEqual((("Id", "Id"),), resolution.column_pairs)
        self.assertIsNotNone(resolution.intermediate)
        self.assertEqual("product_tags", resolution.intermediate.name)
        self.assertEqual("product_id", resolution.intermediate.left_column)
        self.assertEqual("tag_id", resolution.intermediate.right_column)

    def test_invalid_registrations(self) -> None:
        with self.assertRaises(ConfigurationError):
            TypeMetadata([EntityDescriptor("Order"), EntityDescriptor("Order")])

        with self.assertRaises(ConfigurationError):
            TypeMetadata([EntityDescriptor("Dog", base_type="Animal")])

        with self.assertRaises(ConfigurationError):
            TypeMetadata(
                [EntityDescriptor("A", base_type="B"), EntityDescriptor("B", base_type="A")]
            )

        with self.assertRaises(ConfigurationError):
            TypeMetadata(
                [EntityDescriptor("Order", navigations=(NavigationDescriptor("Lines", "Line"),))]
            )

        with self.assertRaises(ConfigurationError):
            TypeMetadata(
                [
                    EntityDescriptor(
                        "Order", properties=(PropertyDescriptor("CustomerId", foreign_key="Buyer"),)
                    )
                ]
            )

        with self.assertRaises(ConfigurationError):
            TypeMetadata(
                [
                    EntityDescriptor("Animal", properties=(_key(),)),
                    EntityDescriptor("Dog", properties=(_key(),), base_type="Animal"),
                ]
            )

    def test_invalid_descriptors(self) -> None:
        with self.assertRaises(AssertionError):
            EntityDescriptor(
                "Order",
                properties=(PropertyDescriptor("Lines"),),
                navigations=(NavigationDescriptor("lines", "OrderLine"),),
            )

        with self.assertRaises(AssertionError):
            EntityDescriptor("Order", properties=(PropertyDescriptor("$Key0"),))
