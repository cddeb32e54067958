# Copyright 2020-present Kensho Technologies, LLC.
import unittest

from ..global_utils import (
    get_only_element_from_collection,
    is_system_name,
    join_path,
    split_path,
    split_property_path,
)


class GlobalUtilTests(unittest.TestCase):
    def test_split_path(self) -> None:
        self.assertEqual([], split_path(""))
        self.assertEqual(["Lines"], split_path("Lines"))
        self.assertEqual(["Lines", "Product"], split_path("Lines/Product"))

        # Empty segments are ignored
        self.assertEqual(["Lines", "Product"], split_path("/Lines//Product/"))

    def test_join_path(self) -> None:
        self.assertEqual("", join_path())
        self.assertEqual("Lines", join_path("", "Lines"))
        self.assertEqual("Orders/Lines", join_path("Orders", "", "Lines"))

    def test_split_property_path(self) -> None:
        self.assertEqual(("", "Number"), split_property_path("Number"))
        self.assertEqual(("Lines/Product", "Name"), split_property_path("Lines/Product/Name"))

        with self.assertRaises(AssertionError):
            split_property_path("")

    def test_is_system_name(self) -> None:
        self.assertTrue(is_system_name("$TypeName"))
        self.assertTrue(is_system_name("$Key0"))
        self.assertFalse(is_system_name("Number"))

    def test_get_only_element_from_collection(self) -> None:
        self.assertEqual(("Id", "OrderId"), get_only_element_from_collection([("Id", "OrderId")]))

        with self.assertRaises(AssertionError):
            get_only_element_from_collection([])

        with self.assertRaises(AssertionError):
            get_only_element_from_collection([1, 2])
