# Copyright 2017-present Kensho Technologies, LLC.
"""Boolean and scalar expression trees used in filters, aggregates and bound plan predicates.

Property references carry a navigation path relative to the node they are evaluated against.
While a plan is being built, every reference is bound to the concrete Column it resolved to, and
every any/all predicate is bound to the path node it ranges over.
"""
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence, Tuple, Union

from .global_utils import split_property_path


if TYPE_CHECKING:
    from .path_tree import PathNode  # noqa  # pylint: disable=cyclic-import
    from .query_plan import Column, Join  # noqa  # pylint: disable=cyclic-import


@unique
class ComparisonOperator(Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"


@unique
class LogicalOperator(Enum):
    AND = "and"
    OR = "or"


@unique
class ArithmeticOperator(Enum):
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    MOD = "mod"


@unique
class Quantifier(Enum):
    ANY = "any"
    ALL = "all"


SUPPORTED_FUNCTIONS = frozenset(
    {"contains", "startswith", "endswith", "tolower", "toupper", "length"}
)


@dataclass
class PropertyReference:
    """A property, optionally behind a chain of navigation steps, e.g. "Lines/Sku"."""

    path: str
    column: Optional["Column"] = field(default=None, compare=False, repr=False)

    @property
    def prefix(self) -> str:
        """Return the navigation part of the path, empty for a property of the scope node."""
        return split_property_path(self.path)[0]

    @property
    def name(self) -> str:
        """Return the name of the referenced property."""
        return split_property_path(self.path)[1]


@dataclass
class Literal:
    value: Any


@dataclass
class Comparison:
    operator: ComparisonOperator
    left: "Expression"
    right: "Expression"


@dataclass
class InList:
    operand: "Expression"
    values: Tuple[Any, ...]


@dataclass
class IsNull:
    operand: "Expression"
    negated: bool = False


@dataclass
class Conjunction:
    operator: LogicalOperator
    operands: List["Expression"]

    def __post_init__(self) -> None:
        """Validate fields."""
        if not self.operands:
            raise AssertionError(f"Expected at least one operand for {self.operator}.")


@dataclass
class Negation:
    operand: "Expression"


@dataclass
class FunctionCall:
    name: str
    arguments: List["Expression"]

    def __post_init__(self) -> None:
        """Validate fields."""
        if self.name not in SUPPORTED_FUNCTIONS:
            raise AssertionError(
                f"Unsupported function {self.name}, expected one of {sorted(SUPPORTED_FUNCTIONS)}."
            )


@dataclass
class Arithmetic:
    operator: ArithmeticOperator
    left: "Expression"
    right: "Expression"


@dataclass
class AnyOrAll:
    """A quantified predicate over the members of a collection navigation.

    Property references inside the predicate are relative to the navigated collection. Once bound,
    the predicate is evaluated as a correlated subselect over the node's source, joined to the
    enclosing source with the given join.
    """

    quantifier: Quantifier
    path: str
    predicate: Optional["Expression"] = None

    node: Optional["PathNode"] = field(default=None, compare=False, repr=False)
    join: Optional["Join"] = field(default=None, compare=False, repr=False)
    inner_joins: List["Join"] = field(default_factory=list, compare=False, repr=False)


Expression = Union[
    PropertyReference,
    Literal,
    Comparison,
    InList,
    IsNull,
    Conjunction,
    Negation,
    FunctionCall,
    Arithmetic,
    AnyOrAll,
]


def get_child_expressions(expression: Expression) -> List[Expression]:
    """Return the direct sub-expressions of the given expression, in evaluation order."""
    if isinstance(expression, (PropertyReference, Literal)):
        return []
    elif isinstance(expression, (Comparison, Arithmetic)):
        return [expression.left, expression.right]
    elif isinstance(expression, (InList, IsNull, Negation)):
        return [expression.operand]
    elif isinstance(expression, Conjunction):
        return list(expression.operands)
    elif isinstance(expression, FunctionCall):
        return list(expression.arguments)
    elif isinstance(expression, AnyOrAll):
        return [] if expression.predicate is None else [expression.predicate]
    else:
        raise AssertionError(f"Unknown expression type {expression}: {type(expression)}")


def iter_property_references(
    expression: Optional[Expression], include_quantified: bool = True
) -> Iterator[PropertyReference]:
    """Yield every property reference in the expression tree, in depth-first order."""
    if expression is None:
        return
    stack: List[Expression] = [expression]
    while stack:
        current = stack.pop()
        if isinstance(current, PropertyReference):
            yield current
        elif isinstance(current, AnyOrAll) and not include_quantified:
            continue
        else:
            stack.extend(reversed(get_child_expressions(current)))


def combine_with_and(expressions: Sequence[Optional[Expression]]) -> Optional[Expression]:
    """Return the conjunction of the given expressions, ignoring missing ones."""
    present = [expression for expression in expressions if expression is not None]
    if not present:
        return None
    elif len(present) == 1:
        return present[0]
    else:
        return Conjunction(LogicalOperator.AND, present)


def equals(path: str, value: Any) -> Comparison:
    """Build the common "property eq literal" predicate."""
    return Comparison(ComparisonOperator.EQ, PropertyReference(path), Literal(value))
