# Copyright 2017-present Kensho Technologies, LLC.
from typing import Collection, List, Tuple, TypeVar

import funcy


PATH_SEPARATOR = "/"

# The discriminator column identifying the concrete type of a polymorphic row.
TYPE_NAME_COLUMN = "$TypeName"

# Prefix of every column the planner adds for its own bookkeeping.
SYSTEM_COLUMN_PREFIX = "$"


T = TypeVar("T")


def split_path(path: str) -> List[str]:
    """Split a navigation path into its single-step segments, ignoring empty segments."""
    return funcy.lremove(lambda segment: not segment, (path or "").split(PATH_SEPARATOR))


def join_path(*segments: str) -> str:
    """Join path segments, skipping empty ones."""
    return PATH_SEPARATOR.join(segment for segment in segments if segment)


def split_property_path(property_path: str) -> Tuple[str, str]:
    """Split "A/B/Name" into its navigation prefix "A/B" and its property name "Name"."""
    segments = split_path(property_path)
    if not segments:
        raise AssertionError(f"Expected a non-empty property path, got {repr(property_path)}.")
    return join_path(*segments[:-1]), segments[-1]


def is_system_name(name: str) -> bool:
    """Return True if the column alias belongs to the planner rather than to an entity."""
    return name.startswith(SYSTEM_COLUMN_PREFIX)


def get_only_element_from_collection(one_element_collection: Collection[T]) -> T:
    """Assert that the collection has exactly one element, then return that element."""
    if len(one_element_collection) != 1:
        raise AssertionError(
            f"Expected a collection with exactly one element, but got: {one_element_collection}"
        )
    return funcy.first(one_element_collection)
