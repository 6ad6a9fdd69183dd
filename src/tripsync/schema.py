"""
Declarative per-type configuration table.

Every entity type is one row: its tie-break priority, the types that
must be applied before it, the merge rule used on conflicts, the
fields that reference other entities, and whether it carries a binary
payload. Adding a type means adding a row here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import DependencyEdge, EntityType

MERGE_LWW = "lww"
MERGE_CONTENT = "content"


@dataclass(frozen=True)
class Reference:
    """A foreign key held in ``fields``.

    Attributes:
        field: Key in the entity's fields.
        target: Referenced entity type.
        many: Whether the field holds a list of ids.
        exclusive: Whether a referenced entity may be claimed by one
            parent only through this field.
        required: Whether a missing value is itself a violation.
    """

    field: str
    target: EntityType
    many: bool = False
    exclusive: bool = False
    required: bool = False


@dataclass(frozen=True)
class TypeSpec:
    """One row of the type table."""

    entity_type: EntityType
    priority: int
    depends_on: tuple[EntityType, ...] = ()
    merge_rule: str = MERGE_LWW
    references: tuple[Reference, ...] = ()
    has_file: bool = False


T = EntityType

TYPE_TABLE: tuple[TypeSpec, ...] = (
    TypeSpec(T.TAG_CATEGORY, priority=1),
    TypeSpec(
        T.TAG, priority=2,
        depends_on=(T.TAG_CATEGORY,),
        references=(Reference("category_id", T.TAG_CATEGORY),),
    ),
    TypeSpec(T.BUCKET_LIST_ITEM, priority=3),
    TypeSpec(T.TRIP, priority=4),
    TypeSpec(
        T.TRIP_MEMBERSHIP, priority=5,
        depends_on=(T.TRIP,),
        references=(Reference("trip_id", T.TRIP, required=True),),
    ),
    TypeSpec(
        T.MEMORY, priority=6,
        depends_on=(T.TRIP, T.TAG, T.BUCKET_LIST_ITEM),
        merge_rule=MERGE_CONTENT,
        references=(
            Reference("trip_id", T.TRIP, required=True),
            Reference("tag_ids", T.TAG, many=True),
            Reference("bucket_list_item_id", T.BUCKET_LIST_ITEM),
            Reference("media_item_ids", T.MEDIA_ITEM, many=True, exclusive=True),
            Reference("gpx_track_id", T.GPX_TRACK, exclusive=True),
        ),
    ),
    TypeSpec(
        T.MEDIA_ITEM, priority=7,
        depends_on=(T.MEMORY,),
        references=(Reference("memory_id", T.MEMORY, required=True),),
        has_file=True,
    ),
    TypeSpec(
        T.GPX_TRACK, priority=8,
        depends_on=(T.MEMORY,),
        references=(Reference("memory_id", T.MEMORY),),
        has_file=True,
    ),
    TypeSpec(
        T.MEMORY_TAG, priority=9,
        depends_on=(T.MEMORY, T.TAG),
        references=(
            Reference("memory_id", T.MEMORY, required=True),
            Reference("tag_id", T.TAG, required=True),
        ),
    ),
    TypeSpec(
        T.MEMORY_BUCKET_LIST_ITEM, priority=10,
        depends_on=(T.MEMORY, T.BUCKET_LIST_ITEM),
        references=(
            Reference("memory_id", T.MEMORY, required=True),
            Reference("bucket_list_item_id", T.BUCKET_LIST_ITEM, required=True),
        ),
    ),
)

_BY_TYPE = {spec.entity_type: spec for spec in TYPE_TABLE}


def spec_for(entity_type: EntityType, table: Optional[tuple[TypeSpec, ...]] = None) -> TypeSpec:
    """Look up the row for an entity type.

    Raises:
        KeyError: If the type has no row.
    """
    if table is None:
        return _BY_TYPE[entity_type]
    for spec in table:
        if spec.entity_type == entity_type:
            return spec
    raise KeyError(entity_type)


def dependency_edges(table: tuple[TypeSpec, ...] = TYPE_TABLE) -> list[DependencyEdge]:
    """All declared edges of a table."""
    return [
        DependencyEdge(before=dep, after=spec.entity_type)
        for spec in table
        for dep in spec.depends_on
    ]


def file_types(table: tuple[TypeSpec, ...] = TYPE_TABLE) -> list[EntityType]:
    """Entity types that carry a binary payload."""
    return [spec.entity_type for spec in table if spec.has_file]
