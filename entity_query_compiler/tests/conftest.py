# Copyright 2018-present Kensho Technologies, LLC.
import pytest

from .test_helpers import create_sqlite_db, get_test_type_metadata


# Pytest fixtures depend on name redefinitions to work,
# so this check generates tons of false-positives here.
# pylint: disable=redefined-outer-name


@pytest.fixture(scope="class")
def sqlite_integration_data(request):
    """Create an in-memory sqlite database with the test data, for the whole test class."""
    engine, sqlalchemy_metadata = create_sqlite_db()
    request.cls.engine = engine
    request.cls.sqlalchemy_metadata = sqlalchemy_metadata
    request.cls.type_metadata = get_test_type_metadata()
    # yield the fixture to allow testing class to run
    yield
    engine.dispose()
