# Copyright 2019-present Kensho Technologies, LLC.
"""Infer equi-join key pairs between entity types from primary and foreign key annotations."""
from dataclasses import dataclass
from typing import TYPE_CHECKING, List

from ..exceptions import ConfigurationError
from .descriptors import JoinResolution


if TYPE_CHECKING:
    from .type_metadata import TypeMetadata  # noqa  # pylint: disable=cyclic-import


@dataclass(frozen=True)
class KeyCandidate:
    """A property usable on one side of a join."""

    name: str
    primary: bool
    # Foreign keys are exact matches when they implement the traversed member itself, and
    # inexact when they merely point at a type compatible with the other side.
    exact: bool


def extract_keys(
    metadata: "TypeMetadata", type_name: str, member: str, other_type: str
) -> List[KeyCandidate]:
    """Return the primary keys and relevant foreign keys of the type, in declaration order."""
    navigations = {navigation.name: navigation for navigation in metadata.navigations(type_name)}
    candidates = []
    for prop in metadata.properties(type_name):
        if prop.is_key:
            candidates.append(KeyCandidate(prop.name, primary=True, exact=True))
        elif prop.foreign_key is not None:
            navigation = navigations[prop.foreign_key]
            if navigation.name.lower() == member.lower():
                candidates.append(KeyCandidate(prop.name, primary=False, exact=True))
            elif metadata.is_assignable_from(navigation.target, other_type):
                candidates.append(KeyCandidate(prop.name, primary=False, exact=False))
    return candidates


def _names(candidates: List[KeyCandidate]) -> List[str]:
    return [candidate.name for candidate in candidates]


def infer_join(
    metadata: "TypeMetadata",
    parent_type: str,
    member: str,
    child_type: str,
    child_is_collection: bool,
) -> JoinResolution:
    """Infer the join between the parent type and the type reached through its member.

    Args:
        metadata: the registered type metadata.
        parent_type: name of the type declaring the navigation member.
        member: name of the traversed navigation member.
        child_type: name of the type the member leads to.
        child_is_collection: whether the member is a collection navigation.

    Returns:
        JoinResolution whose left columns belong to the parent type and right columns to the
        child type.

    Raises:
        ConfigurationError: if no consistent pairing of keys with matching arity can be found.
    """
    source_keys = extract_keys(metadata, parent_type, member, child_type)
    target_keys = extract_keys(metadata, child_type, member, parent_type)

    source_primary = [key for key in source_keys if key.primary]
    source_foreign = [key for key in source_keys if not key.primary]
    source_exact_foreign = [key for key in source_foreign if key.exact]
    target_primary = [key for key in target_keys if key.primary]
    target_foreign = [key for key in target_keys if not key.primary]
    target_exact_foreign = [key for key in target_foreign if key.exact]
    same_type = parent_type == child_type

    if source_exact_foreign and target_primary and not child_is_collection:
        # The parent stores the key of the entity it points at.
        left, right = source_exact_foreign, target_primary
    elif source_primary and target_foreign and (not same_type or child_is_collection):
        left, right = source_primary, target_exact_foreign or target_foreign
    elif target_primary and source_foreign:
        left, right = source_exact_foreign or source_foreign, target_primary
    elif same_type:
        left, right = source_primary, target_primary
    else:
        left, right = [], []

    if not left or len(left) != len(right):
        raise ConfigurationError(
            f"Mismatched nodes can not be joined: member {member} of type {parent_type} leads to "
            f"type {child_type}, but the candidate keys {_names(left)} and {_names(right)} "
            f"do not form a consistent key pairing. Register a join override for this member."
        )
    return JoinResolution(tuple(_names(left)), tuple(_names(right)))
