# Copyright 2018-present Kensho Technologies, LLC.
import sqlite3
from types import SimpleNamespace
import unittest

import pytest
from sqlalchemy import text

from .. import run_request
from ..executor import SQLAlchemyExecutor
from ..expressions import (
    AnyOrAll,
    Comparison,
    ComparisonOperator,
    Conjunction,
    FunctionCall,
    InList,
    Literal,
    LogicalOperator,
    PropertyReference,
    Quantifier,
    equals,
)
from ..plan_builder import PlanBuilder
from ..query_plan import JoinType
from ..request import (
    Aggregate,
    AggregateKind,
    Expand,
    Grouping,
    KeySegment,
    OrderBy,
    QueryRequest,
)
from ..settings import PlanBuilderSettings
from .test_helpers import TEST_DATA


ORDER_IDS = [1, 2, 3, 4, 5]
BY_ID = (OrderBy("Id"),)


def _rows_by_id(table_name, column_names):
    return {row[0]: dict(zip(column_names, row)) for row in TEST_DATA[table_name]}


ORDERS = _rows_by_id("orders", ("Id", "Number", "CustomerId"))
LINES = _rows_by_id(
    "order_lines", ("Id", "OrderId", "Sku", "Price", "Quantity", "ProductId", "CategoryId")
)
NOTES = _rows_by_id("notes", ("Id", "OrderId", "Text"))


def _by_id(entities):
    return sorted(entities, key=lambda entity: entity["Id"])


def _name(entity):
    if isinstance(entity, dict):
        return entity["Name"]
    return entity.Name


@pytest.mark.usefixtures("sqlite_integration_data")
class SqlEndToEndTests(unittest.TestCase):
    def setUp(self) -> None:
        self.maxDiff = None

    def run_query(self, root_type, request, executor=None, settings=None):
        return run_request(
            self.type_metadata,
            executor or SQLAlchemyExecutor(),
            self.engine,
            root_type,
            request,
            settings=settings,
        )

    def run_ids(self, root_type, request, executor=None, settings=None):
        results = self.run_query(root_type, request, executor, settings)
        return [entity["Id"] for entity in results]

    def assertSortedEqual(self, expected, results):
        """Compare entity lists regardless of the order of rows the database returned."""
        self.assertListEqual(_by_id(expected), _by_id(results))

    def test_sqlite_cte(self) -> None:
        with self.engine.connect() as connection:
            query = text("WITH result AS (SELECT 1 as num) SELECT num FROM result")
            list(connection.execute(query))

    def test_sqlite_version(self) -> None:
        # this is the version of Sqlite that introduced CTEs
        self.assertGreaterEqual(sqlite3.sqlite_version_info, (3, 8, 3))

    # Filters

    def test_basic_filter(self) -> None:
        result = self.run_query("Order", QueryRequest(filter=equals("Number", "A-1")))
        self.assertEqual([ORDERS[1]], result)

    def test_filter_functions(self) -> None:
        starts_with_b = FunctionCall("startswith", [PropertyReference("Number"), Literal("B")])
        request = QueryRequest(filter=starts_with_b, orderings=BY_ID)
        self.assertEqual([3, 4, 5], self.run_ids("Order", request))

        request = QueryRequest(filter=InList(PropertyReference("Id"), (1, 3)), orderings=BY_ID)
        self.assertEqual([1, 3], self.run_ids("Order", request))

    def test_filter_on_collection(self) -> None:
        request = QueryRequest(filter=equals("Lines/Sku", "X"), orderings=BY_ID)
        self.assertEqual([ORDERS[1], ORDERS[2]], self.run_query("Order", request))

    def test_any_and_all(self) -> None:
        request = QueryRequest(
            filter=AnyOrAll(Quantifier.ANY, "Lines", equals("Sku", "Z")), orderings=BY_ID
        )
        self.assertEqual([3], self.run_ids("Order", request))

        all_expensive = AnyOrAll(
            Quantifier.ALL,
            "Lines",
            Comparison(ComparisonOperator.GT, PropertyReference("Price"), Literal(4.0)),
        )
        request = QueryRequest(filter=all_expensive, orderings=BY_ID)
        self.assertEqual([1, 2, 4, 5], self.run_ids("Order", request))

    def test_all_on_expanded_collection(self) -> None:
        all_x = AnyOrAll(Quantifier.ALL, "Lines", equals("Sku", "X"))
        for expand in ((), (Expand("Lines"),), (Expand("Lines"), Expand("Notes"))):
            with self.subTest(expand=expand):
                request = QueryRequest(filter=all_x, orderings=BY_ID, expand=expand)
                result = self.run_query("Order", request)
                self.assertEqual([2, 4, 5], [order["Id"] for order in result])
                if expand:
                    self.assertEqual([[LINES[3]], [], []], [order["Lines"] for order in result])

    def test_any_on_expanded_collection(self) -> None:
        request = QueryRequest(
            filter=AnyOrAll(Quantifier.ANY, "Lines", equals("Sku", "Y")),
            expand=(Expand("Lines"),),
        )
        (order,) = self.run_query("Order", request)
        self.assertEqual(1, order["Id"])
        self.assertEqual([LINES[1], LINES[2]], _by_id(order["Lines"]))

    def test_quantified_and_inline_references_to_a_collection(self) -> None:
        request = QueryRequest(
            filter=Conjunction(
                LogicalOperator.OR,
                [equals("Lines/Sku", "Z"), AnyOrAll(Quantifier.ALL, "Lines", equals("Sku", "X"))],
            ),
            orderings=BY_ID,
        )
        # Orders without lines have no inner joined rows
        self.assertEqual([2, 3], self.run_ids("Order", request))

        settings = PlanBuilderSettings(default_join_type=JoinType.LEFT)
        self.assertEqual([2, 3, 4, 5], self.run_ids("Order", request, settings=settings))

    def test_filtered_expanded_collection_is_complete(self) -> None:
        expected_lines = {1: [LINES[1], LINES[2]], 2: [LINES[3]]}
        for expand in ((Expand("Lines"),), (Expand("Lines"), Expand("Notes"))):
            with self.subTest(expand=expand):
                request = QueryRequest(
                    filter=equals("Lines/Sku", "X"), orderings=BY_ID, expand=expand
                )
                result = self.run_query("Order", request)
                self.assertEqual(
                    expected_lines, {order["Id"]: _by_id(order["Lines"]) for order in result}
                )

    def test_argument_path(self) -> None:
        request = QueryRequest(
            orderings=BY_ID, argument_path=(KeySegment("Order", "Lines", {"Id": 1}),)
        )
        self.assertEqual([1, 2], self.run_ids("OrderLine", request))

        request = QueryRequest(
            orderings=BY_ID, argument_path=(KeySegment("Order", "Lines", {"Number": "A-2"}),)
        )
        self.assertEqual([LINES[3]], self.run_query("OrderLine", request))

    # Expansion

    def test_expand_collection(self) -> None:
        request = QueryRequest(filter=equals("Id", 1), expand=(Expand("Lines"),))
        (order,) = self.run_query("Order", request)
        self.assertEqual(ORDERS[1], {key: order[key] for key in ORDERS[1]})
        self.assertSortedEqual([LINES[1], LINES[2]], order["Lines"])

    def test_expand_with_selects(self) -> None:
        request = QueryRequest(
            filter=equals("Id", 1),
            selects=("Number",),
            expand=(Expand("Lines", selects=("Sku",)),),
        )
        (order,) = self.run_query("Order", request)
        self.assertEqual({"Number", "Id", "Lines"}, set(order))
        self.assertSortedEqual([{"Id": 1, "Sku": "X"}, {"Id": 2, "Sku": "Y"}], order["Lines"])

    def test_expand_scalar(self) -> None:
        request = QueryRequest(orderings=BY_ID, expand=(Expand("Customer"),))
        result = self.run_query("Order", request)
        self.assertEqual(
            ["Ada", "Ada", "Grace", "Grace", "Grace"],
            [order["Customer"]["Name"] for order in result],
        )

    def test_expand_sibling_collections(self) -> None:
        request = QueryRequest(orderings=BY_ID, expand=(Expand("Lines"), Expand("Notes")))
        result = self.run_query("Order", request)
        self.assertEqual(ORDER_IDS, [order["Id"] for order in result])

        expected_lines = {1: [1, 2], 2: [3], 3: [4], 4: [], 5: []}
        expected_notes = {1: [1, 2], 2: [], 3: [3], 4: [], 5: []}
        for order in result:
            self.assertSortedEqual(
                [LINES[line_id] for line_id in expected_lines[order["Id"]]], order["Lines"]
            )
            self.assertSortedEqual(
                [NOTES[note_id] for note_id in expected_notes[order["Id"]]], order["Notes"]
            )

    def test_expand_nested_collections(self) -> None:
        request = QueryRequest(
            orderings=BY_ID, expand=(Expand("Orders", children=(Expand("Lines"),)),)
        )
        result = self.run_query("Customer", request)
        summary = [
            (
                customer["Name"],
                [
                    (order["Id"], sorted(line["Id"] for line in order["Lines"]))
                    for order in _by_id(customer["Orders"])
                ],
            )
            for customer in result
        ]
        self.assertEqual(
            [
                ("Ada", [(1, [1, 2]), (2, [3])]),
                ("Grace", [(3, [4]), (4, []), (5, [])]),
            ],
            summary,
        )

    def test_expand_filter(self) -> None:
        request = QueryRequest(
            orderings=BY_ID, expand=(Expand("Lines", filter=equals("Sku", "X")),)
        )
        result = self.run_query("Order", request)
        self.assertEqual(
            [[1], [3], [], [], []],
            [sorted(line["Id"] for line in order["Lines"]) for order in result],
        )

    def test_expand_ordering_and_paging(self) -> None:
        request = QueryRequest(
            orderings=BY_ID,
            expand=(
                Expand("Lines", orderings=(OrderBy("Price", descending=True),), top=1),
                Expand("Notes"),
            ),
        )
        result = self.run_query("Order", request)
        self.assertEqual(
            [[1], [3], [4], [], []],
            [[line["Id"] for line in order["Lines"]] for order in result],
        )

    def test_expand_many_to_many(self) -> None:
        for top in (None, 2):
            request = QueryRequest(orderings=BY_ID, expand=(Expand("Tags"),), top=top)
            result = self.run_query("Product", request)
            labels = [sorted(tag["Label"] for tag in product["Tags"]) for product in result]
            expected = [["new", "sale"], ["sale"], []]
            self.assertEqual(expected[:top], labels)

    # Paging

    def test_paging(self) -> None:
        for use_join_for_skip in (False, True):
            executor = SQLAlchemyExecutor(use_join_for_skip=use_join_for_skip)
            for skip in (None, 0, 1, 2, 4, 5, 7):
                for top in (None, 0, 1, 2, 3, 10):
                    with self.subTest(use_join_for_skip=use_join_for_skip, skip=skip, top=top):
                        request = QueryRequest(top=top, skip=skip)
                        expected = ORDER_IDS[skip or 0:]
                        if top is not None:
                            expected = expected[:top]
                        self.assertEqual(expected, self.run_ids("Order", request, executor))

    def test_paging_with_joins(self) -> None:
        request = QueryRequest(
            filter=equals("Lines/Sku", "X"),
            orderings=(OrderBy("Number", descending=True),),
            top=1,
            skip=1,
        )
        for use_join_for_skip in (False, True):
            executor = SQLAlchemyExecutor(use_join_for_skip=use_join_for_skip)
            self.assertEqual([1], self.run_ids("Order", request, executor))

    def test_paging_with_expanded_branches(self) -> None:
        request = QueryRequest(top=2, skip=1, expand=(Expand("Lines"), Expand("Notes")))
        for use_join_for_skip in (False, True):
            executor = SQLAlchemyExecutor(use_join_for_skip=use_join_for_skip)
            result = self.run_query("Order", request, executor)
            self.assertEqual([2, 3], [order["Id"] for order in result])
            self.assertEqual([LINES[3]], result[0]["Lines"])
            self.assertEqual([], result[0]["Notes"])
            self.assertEqual([LINES[4]], result[1]["Lines"])
            self.assertEqual([NOTES[3]], result[1]["Notes"])

    def test_paging_joined_seed(self) -> None:
        request = QueryRequest(
            filter=equals("Customer/Name", "Grace"),
            orderings=BY_ID,
            top=1,
            skip=1,
            expand=(Expand("Lines"), Expand("Notes")),
        )
        for use_join_for_skip in (False, True):
            executor = SQLAlchemyExecutor(use_join_for_skip=use_join_for_skip)
            result = self.run_query("Order", request, executor)
            self.assertEqual([dict(ORDERS[4], Lines=[], Notes=[])], result)

    # Aggregates

    def test_group_by(self) -> None:
        request = QueryRequest(
            groupings=(Grouping(("CategoryId",)),),
            aggregates=(Aggregate(AggregateKind.SUM, PropertyReference("Price"), "Total"),),
            orderings=(OrderBy("CategoryId"),),
        )
        expected = [{"CategoryId": 1, "Total": 20.0}, {"CategoryId": 2, "Total": 7.5}]
        self.assertEqual(expected, self.run_query("OrderLine", request))

        for use_join_for_skip in (False, True):
            executor = SQLAlchemyExecutor(use_join_for_skip=use_join_for_skip)
            paged_request = QueryRequest(
                groupings=request.groupings,
                aggregates=request.aggregates,
                orderings=request.orderings,
                skip=1,
            )
            self.assertEqual(expected[1:], self.run_query("OrderLine", paged_request, executor))

    def test_count_aggregate(self) -> None:
        request = QueryRequest(aggregates=(Aggregate(AggregateKind.COUNT, alias="Count"),))
        self.assertEqual([{"Count": 5}], self.run_query("Order", request))

    def test_count_rows(self) -> None:
        executor = SQLAlchemyExecutor()
        builder = PlanBuilder.for_executor(self.type_metadata, executor)

        plan = builder.build_count("Order", QueryRequest(top=1, expand=(Expand("Lines"),)))
        self.assertEqual(5, executor.count_rows(plan, self.engine))
        self.assertEqual(10, executor.count_rows(plan, self.engine, [self.engine, self.engine]))

        plan = builder.build_count("Order", QueryRequest(filter=equals("Lines/Sku", "X")))
        self.assertEqual(2, executor.count_rows(plan, self.engine))

    def test_timeout_is_passed_through(self) -> None:
        request = QueryRequest(filter=equals("Id", 1), timeout=5)
        self.assertEqual([ORDERS[1]], self.run_query("Order", request))

    # Polymorphism

    def test_polymorphic_rows(self) -> None:
        result = self.run_query("Animal", QueryRequest(orderings=BY_ID))
        self.assertEqual(
            [
                {"Id": 1, "Name": "Rex", "OwnerId": 1, "Breed": "Collie"},
                SimpleNamespace(Id=2, Name="Tom", OwnerId=1, Lives=9),
                {"Id": 3, "Name": "Fido", "OwnerId": 2, "Breed": "Pug"},
            ],
            result,
        )

    def test_filter_on_subtype_member(self) -> None:
        result = self.run_query("Animal", QueryRequest(filter=equals("Breed", "Pug")))
        self.assertEqual([{"Id": 3, "Name": "Fido", "OwnerId": 2, "Breed": "Pug"}], result)

    def test_expand_polymorphic_collection(self) -> None:
        request = QueryRequest(orderings=BY_ID, expand=(Expand("Pets"),))
        result = self.run_query("Customer", request)
        self.assertEqual(
            [["Rex", "Tom"], ["Fido"]],
            [sorted(_name(pet) for pet in customer["Pets"]) for customer in result],
        )
