# Copyright 2017-present Kensho Technologies, LLC.
"""Commonly-used functions and data types from this package."""
from typing import Any, List, Optional, Sequence

from .exceptions import (  # noqa
    ConfigurationError,
    DataInconsistencyError,
    QueryCompilerError,
    UnsupportedOperationError,
)
from .executor import Executor, SQLAlchemyExecutor  # noqa
from .expressions import (  # noqa
    AnyOrAll,
    Arithmetic,
    ArithmeticOperator,
    Comparison,
    ComparisonOperator,
    Conjunction,
    FunctionCall,
    InList,
    IsNull,
    Literal,
    LogicalOperator,
    Negation,
    PropertyReference,
    Quantifier,
)
from .materializer import RawRowSet, ResultMaterializer  # noqa
from .plan_builder import PlanBuilder  # noqa
from .projection import ProjectionHelper  # noqa
from .query_plan import QueryPlan, SelectQuery  # noqa
from .request import (  # noqa
    Aggregate,
    AggregateKind,
    Expand,
    Grouping,
    GroupingKind,
    KeySegment,
    OrderBy,
    QueryRequest,
)
from .schema import (  # noqa
    EntityDescriptor,
    NavigationDescriptor,
    PropertyDescriptor,
    TypeMetadata,
    get_entity_descriptors_from_tables,
)
from .settings import PlanBuilderSettings  # noqa


__package_name__ = "entity-query-compiler"
__version__ = "1.0.0"


def run_request(
    metadata: TypeMetadata,
    executor: Executor,
    backend_target: Any,
    root_type: str,
    request: QueryRequest,
    shard_set: Optional[Sequence[Any]] = None,
    settings: Optional[PlanBuilderSettings] = None,
) -> List[Any]:
    """Plan the request, run the plan with the executor and materialize the root entities.

    Args:
        metadata: TypeMetadata describing every entity type the request may touch.
        executor: Executor running the plan against the backend.
        backend_target: the backend the executor runs the plan against, e.g. a SQLAlchemy Engine
                        for the SQLAlchemyExecutor.
        root_type: name of the entity type the request is rooted at.
        request: QueryRequest to run.
        shard_set: optional backends holding disjoint parts of the data.
        settings: optional PlanBuilderSettings. The skip strategy is always the executor's.

    Returns:
        list of materialized root entities, or of plain records for aggregate requests
    """
    plan = PlanBuilder.for_executor(metadata, executor, settings).build(root_type, request)
    raw_rows = executor.run_plan(plan, backend_target, shard_set, request.timeout)
    return ResultMaterializer(metadata).materialize(plan, raw_rows)
