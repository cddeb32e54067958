# Copyright 2019-present Kensho Technologies, LLC.
"""Executors run plans against a backend and return the raw rows for materialization."""
from abc import ABCMeta, abstractmethod
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.sql.functions import func
from sqlalchemy.sql.selectable import Select

from .emit_sql import emit_count_query, emit_query, emit_secondary_queries
from .materializer import RawRowSet, Row
from .projection import ProjectionHelper
from .query_plan import SelectQuery


logger = logging.getLogger(__name__)


class Executor(metaclass=ABCMeta):
    """Backend collaborator running plans built by a PlanBuilder.

    Every query of a split plan is independent of the others: the seed and branch queries may be
    issued in any order, or in parallel.
    """

    # Whether plans for this backend emulate skip with a self-join instead of OFFSET.
    use_join_for_skip: bool = False

    def __init__(self, projection_helper: Optional[ProjectionHelper] = None) -> None:
        """Create an executor using the given projection helper for split plans."""
        self.projection_helper = projection_helper or ProjectionHelper()

    @property
    def count_expression(self) -> Any:
        """Return the expression counting the rows of a query."""
        return func.count()

    @abstractmethod
    def run_plan(
        self,
        plan: SelectQuery,
        backend_target: Any,
        shard_set: Optional[Sequence[Any]] = None,
        timeout: Optional[float] = None,
    ) -> RawRowSet:
        """Run every query of the plan and return their rows.

        Args:
            plan: plan built by a PlanBuilder.
            backend_target: the backend to run the plan against.
            shard_set: optional backends holding disjoint parts of the data. When given, the plan
                       runs against each of them and the rows are concatenated.
            timeout: optional timeout in seconds, passed to the backend as is.

        Returns:
            RawRowSet with the rows of the plan, and the rows of each branch of a split plan.
        """
        raise NotImplementedError()


class SQLAlchemyExecutor(Executor):
    """Runs plans against SQL databases through SQLAlchemy engines."""

    def __init__(
        self,
        use_join_for_skip: bool = False,
        projection_helper: Optional[ProjectionHelper] = None,
    ) -> None:
        """Create an executor, optionally for databases lacking OFFSET support."""
        super(SQLAlchemyExecutor, self).__init__(projection_helper)
        self.use_join_for_skip = use_join_for_skip

    def _fetch(
        self, engines: Sequence[Engine], query: Select, timeout: Optional[float]
    ) -> List[Row]:
        rows: List[Row] = []
        for engine in engines:
            logger.debug("Executing on %s: %s", engine.url, query)
            with engine.connect() as connection:
                if timeout is not None:
                    connection = connection.execution_options(timeout=timeout)
                rows.extend(dict(row._mapping) for row in connection.execute(query))
        return rows

    def run_plan(
        self,
        plan: SelectQuery,
        backend_target: Engine,
        shard_set: Optional[Sequence[Engine]] = None,
        timeout: Optional[float] = None,
    ) -> RawRowSet:
        """Run the seed or main query of the plan, then every branch query."""
        engines = list(shard_set) if shard_set else [backend_target]
        rows = self._fetch(engines, emit_query(plan), timeout)
        secondary_rows: Dict[str, List[Row]] = {
            component_id: self._fetch(engines, query, timeout)
            for component_id, query in emit_secondary_queries(plan).items()
        }
        return RawRowSet(rows, secondary_rows)

    def count_rows(
        self,
        plan: SelectQuery,
        backend_target: Engine,
        shard_set: Optional[Sequence[Engine]] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Return the number of root rows the plan selects, summed over all shards."""
        engines = list(shard_set) if shard_set else [backend_target]
        query = emit_count_query(plan, self.count_expression)
        return sum(
            next(iter(row.values()))
            for row in self._fetch(engines, query, timeout)
        )
