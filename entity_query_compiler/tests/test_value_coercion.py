# Copyright 2020-present Kensho Technologies, LLC.
from datetime import date, datetime
from decimal import Decimal
import unittest

from ..value_coercion import coerce_value


class ValueCoercionTests(unittest.TestCase):
    def test_none_and_untyped_values_are_unchanged(self) -> None:
        self.assertIsNone(coerce_value(int, None))
        self.assertEqual("abc", coerce_value(None, "abc"))

        value = object()
        self.assertIs(value, coerce_value(list, value))

    def test_numbers(self) -> None:
        self.assertEqual(5, coerce_value(int, "5"))
        self.assertEqual(2.5, coerce_value(float, Decimal("2.5")))
        self.assertEqual(3.0, coerce_value(float, 3))
        self.assertEqual(Decimal("0.1"), coerce_value(Decimal, 0.1))
        self.assertEqual(Decimal("12"), coerce_value(Decimal, "12"))

        with self.assertRaises(ValueError):
            coerce_value(int, 2.5)

        with self.assertRaises(ValueError):
            coerce_value(int, True)

    def test_booleans(self) -> None:
        self.assertTrue(coerce_value(bool, 1))
        self.assertTrue(coerce_value(bool, "true"))
        self.assertFalse(coerce_value(bool, "0"))

        with self.assertRaises(ValueError):
            coerce_value(bool, "maybe")

    def test_dates(self) -> None:
        self.assertEqual(date(2020, 1, 31), coerce_value(date, "2020-01-31"))
        self.assertEqual(date(2020, 1, 31), coerce_value(date, date(2020, 1, 31)))

        # Truncating a datetime would silently lose its time component
        with self.assertRaises(ValueError):
            coerce_value(date, datetime(2020, 1, 31, 12, 30))

        with self.assertRaises(ValueError):
            coerce_value(date, "2020-01-31T12:30:00")

        with self.assertRaises(ValueError):
            coerce_value(date, "not a date")

    def test_datetimes(self) -> None:
        self.assertEqual(
            datetime(2020, 1, 31, 12, 30), coerce_value(datetime, "2020-01-31T12:30:00")
        )
        self.assertEqual(datetime(2020, 1, 31), coerce_value(datetime, date(2020, 1, 31)))

        with self.assertRaises(ValueError):
            coerce_value(datetime, 12)
