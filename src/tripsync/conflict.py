"""
Conflict Resolution Engine -- local vs. remote version of one entity.

Default policy is last-write-wins on ``updated_at``: a strictly newer
remote wins wholesale, a strictly newer local stays authoritative and
is re-sent, equal timestamps go to the remote so devices converge on
server state.

Types declaring the ``content`` merge rule get field-level merging
instead:

    text fields      longer non-empty value
    set fields       union of both sides
    ordered lists    local order first, remote-only ids appended
    location         tighter reported accuracy, else remote

Everything else in a merged record follows last-write-wins. When the
local copy carries ``base_fields`` (what the server last agreed to),
the merge is three-way: an unedited local copy takes the remote
wholesale, and a field edited on one side only keeps that edit. The
rules above then apply only to fields edited on both sides. When both
sides carry an explicit conflict marker the record is surfaced as a
conflict for manual resolution.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .models import SyncableEntity
from .schema import MERGE_CONTENT, MERGE_LWW, TYPE_TABLE, TypeSpec, spec_for

logger = logging.getLogger("tripsync.conflict")

TEXT_FIELDS = ("title", "text")
SET_FIELDS = ("tag_ids",)
ORDERED_FIELDS = ("media_item_ids",)
LOCATION_FIELDS = ("location",)


class Winner(str, Enum):
    """Verdict of a resolution."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"
    CONFLICT = "conflict"


class Resolution(BaseModel):
    """Outcome of resolving one local/remote pair.

    ``merged_fields`` is set for ``merged`` verdicts only.
    """

    winner: Winner
    merged_fields: Optional[dict[str, Any]] = None
    conflicted_fields: list[str] = Field(default_factory=list)
    details: str = ""


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------


def merge_text(local: Any, remote: Any, prefer_remote: bool) -> Any:
    """Longer non-empty value; equal lengths go to the LWW side."""
    local_s = local or ""
    remote_s = remote or ""
    if len(remote_s) > len(local_s):
        return remote
    if len(local_s) > len(remote_s):
        return local
    return remote if prefer_remote else local


def merge_set(local: Any, remote: Any) -> list:
    """Union of both sides, sorted for a stable representation."""
    return sorted(set(local or []) | set(remote or []))


def merge_ordered(local: Any, remote: Any) -> list:
    """Local order first, then remote-only items; never duplicated."""
    merged: list = []
    seen: set = set()
    for item in list(local or []) + list(remote or []):
        if item not in seen:
            seen.add(item)
            merged.append(item)
    return merged


def merge_location(local: Any, remote: Any) -> Any:
    """Tighter reported accuracy wins; otherwise the remote value."""
    if not local:
        return remote
    if not remote:
        return local
    local_acc = local.get("accuracy") if isinstance(local, dict) else None
    remote_acc = remote.get("accuracy") if isinstance(remote, dict) else None
    if local_acc is not None and remote_acc is not None and local_acc < remote_acc:
        return local
    return remote


def _field_rule(key: str) -> Optional[Callable[[Any, Any, bool], Any]]:
    if key in TEXT_FIELDS:
        return merge_text
    if key in SET_FIELDS:
        return lambda lv, rv, _prefer: merge_set(lv, rv)
    if key in ORDERED_FIELDS:
        return lambda lv, rv, _prefer: merge_ordered(lv, rv)
    if key in LOCATION_FIELDS:
        return lambda lv, rv, _prefer: merge_location(lv, rv)
    return None


def _merge_content(
    local: SyncableEntity,
    remote: SyncableEntity,
    prefer_remote: bool,
    base: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Field-level merge of two versions of a content record.

    With a ``base`` (the fields last agreed with the server) a field
    changed on one side only takes that side's value; the field rules
    apply only to fields changed on both sides. Without a base every
    differing field goes through the rules.
    """
    lf, rf = local.fields, remote.fields
    merged = dict(rf if prefer_remote else lf)
    for key in set(lf) | set(rf):
        if key not in merged:
            merged[key] = lf.get(key, rf.get(key))

    for key in set(lf) | set(rf):
        if lf.get(key) == rf.get(key):
            continue
        if base is not None:
            local_changed = lf.get(key) != base.get(key)
            remote_changed = rf.get(key) != base.get(key)
            if not remote_changed:
                _take(merged, lf, key)
                continue
            if not local_changed:
                _take(merged, rf, key)
                continue
        rule = _field_rule(key)
        if rule is not None:
            merged[key] = rule(lf.get(key), rf.get(key), prefer_remote)
    return merged


def _take(merged: dict[str, Any], side: dict[str, Any], key: str) -> None:
    if key in side:
        merged[key] = side[key]
    else:
        merged.pop(key, None)


MERGE_RULES: dict[str, Callable[..., dict[str, Any]]] = {
    MERGE_CONTENT: _merge_content,
}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Resolves local/remote pairs per the type table's merge rules.

    Resolution is a pure function of the two versions and the table:
    the same inputs always produce the same verdict.

    Args:
        table: Type table providing each type's merge rule.
    """

    def __init__(self, table: tuple[TypeSpec, ...] = TYPE_TABLE):
        self._table = table

    def resolve(self, local: SyncableEntity, remote: SyncableEntity) -> Resolution:
        """Decide which version wins, or produce a field-level merge.

        Args:
            local: The version stored on this device.
            remote: The version received from the server.

        Returns:
            Resolution verdict.

        Raises:
            ValueError: If the two versions are not the same entity.
        """
        if local.id != remote.id or local.entity_type != remote.entity_type:
            raise ValueError(
                f"Cannot resolve {local.entity_type.value}:{local.id} "
                f"against {remote.entity_type.value}:{remote.id}"
            )

        differing = find_conflicted_fields(local, remote)

        if local.conflict_marker and remote.conflict_marker:
            logger.warning(
                "Hard conflict on %s %s (%s)",
                local.entity_type.value, local.id, ", ".join(differing) or "no field diff",
            )
            return Resolution(
                winner=Winner.CONFLICT,
                conflicted_fields=differing,
                details="Both sides flagged a hard conflict",
            )

        prefer_remote = remote.updated_at >= local.updated_at
        rule = spec_for(local.entity_type, self._table).merge_rule

        if rule != MERGE_LWW and differing:
            base = local.base_fields
            if base is not None and local.fields == base:
                return Resolution(
                    winner=Winner.REMOTE,
                    conflicted_fields=differing,
                    details="No local edit since last sync",
                )
            merge = MERGE_RULES[rule]
            merged = merge(local, remote, prefer_remote, base)
            if merged == remote.fields and prefer_remote:
                return Resolution(
                    winner=Winner.REMOTE,
                    conflicted_fields=differing,
                    details="Merge produced the remote version",
                )
            if merged == local.fields and not prefer_remote:
                return Resolution(
                    winner=Winner.LOCAL,
                    conflicted_fields=differing,
                    details="Merge produced the local version",
                )
            return Resolution(
                winner=Winner.MERGED,
                merged_fields=merged,
                conflicted_fields=differing,
                details=f"Field merge ({rule}), {'remote' if prefer_remote else 'local'} base",
            )

        if remote.updated_at > local.updated_at:
            details = f"Remote newer (remote: {remote.updated_at}, local: {local.updated_at})"
            winner = Winner.REMOTE
        elif local.updated_at > remote.updated_at:
            details = f"Local newer (local: {local.updated_at}, remote: {remote.updated_at})"
            winner = Winner.LOCAL
        else:
            details = f"Equal timestamps ({local.updated_at}), remote wins tie-break"
            winner = Winner.REMOTE
        return Resolution(winner=winner, conflicted_fields=differing, details=details)


def find_conflicted_fields(local: SyncableEntity, remote: SyncableEntity) -> list[str]:
    """Names of type-specific fields whose values differ."""
    keys = set(local.fields) | set(remote.fields)
    return sorted(k for k in keys if local.fields.get(k) != remote.fields.get(k))
