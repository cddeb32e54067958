# Copyright 2019-present Kensho Technologies, LLC.
from .descriptors import (  # noqa
    EntityDescriptor,
    IntermediateTable,
    JoinOverride,
    JoinResolution,
    NavigationDescriptor,
    PropertyDescriptor,
)
from .sqlalchemy_reflection import get_entity_descriptors_from_tables  # noqa
from .type_metadata import TypeMetadata  # noqa
