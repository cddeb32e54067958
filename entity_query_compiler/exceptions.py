# Copyright 2017-present Kensho Technologies, LLC.
class QueryCompilerError(Exception):
    """Generic error when planning or materializing an entity query."""


class ConfigurationError(QueryCompilerError):
    """Exception raised when a request cannot be planned against the registered type metadata.

    This could be due to many reasons, such as:
    - the request references a property that does not exist on the type it was aligned to;
    - no consistent join key pair could be found between two types;
    - a non-rollup grouping has more than one column;
    - an aggregate over several properties is missing its alias.
    """


class UnsupportedOperationError(QueryCompilerError):
    """Exception raised when the request has a shape the planner does not model.

    For example:
    - splitting expand branches when the root or a branch is backed by a union of subtypes;
    - expanding navigation properties inside an aggregate query.
    """


class DataInconsistencyError(QueryCompilerError):
    """Exception raised when returned rows do not fit the plan they were produced by.

    For example:
    - a row bucket cannot be traced back to exactly one parent bucket;
    - a discriminator value names a type that was never registered.
    """
