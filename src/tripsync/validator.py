"""
Consistency Validator -- read-only checks of local state after a cycle.

Findings are reported, never repaired. A cycle does not fail because
of them; they exist so a broken invariant shows up in logs and in
``tripsync sync validate`` instead of silently corrupting later cycles.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from .errors import IntegrityViolation
from .models import TRANSIENT_STATUSES, EntityType, SyncableEntity, utcnow
from .schema import TYPE_TABLE, TypeSpec, file_types, spec_for
from .store import LocalStore

logger = logging.getLogger("tripsync.validator")

DANGLING_REFERENCE = "dangling_reference"
MISSING_REFERENCE = "missing_reference"
WRONG_TARGET_TYPE = "wrong_target_type"
STALE_STATUS = "stale_status"
UNEXPECTED_FILE_STATUS = "unexpected_file_status"
SHARED_EXCLUSIVE = "shared_exclusive_reference"


class Violation(BaseModel):
    """One broken consistency rule."""

    kind: str
    entity_type: EntityType
    entity_id: str
    detail: str = ""


class ValidationReport(BaseModel):
    """Everything the validator found in one pass."""

    checked: int = 0
    violations: list[Violation] = Field(default_factory=list)
    checked_at: str = Field(default_factory=lambda: utcnow().isoformat())

    @property
    def ok(self) -> bool:
        return not self.violations

    def by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        for v in self.violations:
            counts[v.kind] += 1
        return dict(counts)

    def raise_for_violations(self) -> None:
        """Raise IntegrityViolation if anything was found."""
        if self.violations:
            summary = ", ".join(f"{k}={n}" for k, n in sorted(self.by_kind().items()))
            raise IntegrityViolation(f"{len(self.violations)} violation(s): {summary}")


class ConsistencyValidator:
    """Checks referential integrity and status sanity of a local store.

    Args:
        table: Type table declaring references per entity type.
    """

    def __init__(self, table: tuple[TypeSpec, ...] = TYPE_TABLE):
        self._table = table
        self._file_types = set(file_types(table))

    def validate(
        self,
        store: LocalStore,
        in_flight: Optional[Iterable[str]] = None,
    ) -> ValidationReport:
        """Run every check against the store.

        Args:
            store: Local store to inspect.
            in_flight: Entity ids whose binaries are being transferred
                right now; their transient file status is expected.

        Returns:
            The report. Never raises for findings.
        """
        busy = set(in_flight or ())
        entities = store.all()
        index = {e.id: e for e in entities}
        tombstoned = {t.entity_id for t in store.tombstones()}

        report = ValidationReport(checked=len(entities))
        claims: dict[tuple[str, str], list[SyncableEntity]] = defaultdict(list)

        for entity in entities:
            report.violations.extend(self._check_status(entity, busy))
            spec = spec_for(entity.entity_type, self._table)
            for ref in spec.references:
                value = entity.fields.get(ref.field)
                targets = _as_list(value)
                if not targets:
                    if ref.required:
                        report.violations.append(Violation(
                            kind=MISSING_REFERENCE,
                            entity_type=entity.entity_type,
                            entity_id=entity.id,
                            detail=f"{ref.field} is required",
                        ))
                    continue

                for target_id in targets:
                    if ref.exclusive:
                        claims[(ref.field, target_id)].append(entity)
                    target = index.get(target_id)
                    if target is None:
                        if target_id not in tombstoned:
                            report.violations.append(Violation(
                                kind=DANGLING_REFERENCE,
                                entity_type=entity.entity_type,
                                entity_id=entity.id,
                                detail=f"{ref.field} -> {ref.target.value} {target_id}",
                            ))
                    elif target.entity_type != ref.target:
                        report.violations.append(Violation(
                            kind=WRONG_TARGET_TYPE,
                            entity_type=entity.entity_type,
                            entity_id=entity.id,
                            detail=(
                                f"{ref.field} points at {target.entity_type.value}, "
                                f"expected {ref.target.value}"
                            ),
                        ))

        for (field_name, target_id), parents in sorted(claims.items()):
            if len(parents) > 1:
                owners = ", ".join(sorted(p.id for p in parents))
                for parent in parents:
                    report.violations.append(Violation(
                        kind=SHARED_EXCLUSIVE,
                        entity_type=parent.entity_type,
                        entity_id=parent.id,
                        detail=f"{field_name} {target_id} also claimed by: {owners}",
                    ))

        if report.ok:
            logger.debug("Validated %d entities, no violations", report.checked)
        else:
            logger.warning(
                "Validation found %d violation(s) in %d entities: %s",
                len(report.violations), report.checked, report.by_kind(),
            )
        return report

    def _check_status(self, entity: SyncableEntity, busy: set[str]) -> list[Violation]:
        found = []
        if entity.sync_status in TRANSIENT_STATUSES:
            found.append(Violation(
                kind=STALE_STATUS,
                entity_type=entity.entity_type,
                entity_id=entity.id,
                detail=f"sync_status {entity.sync_status.value} outside a cycle",
            ))
        if entity.file_status is None:
            return found
        if entity.entity_type not in self._file_types:
            found.append(Violation(
                kind=UNEXPECTED_FILE_STATUS,
                entity_type=entity.entity_type,
                entity_id=entity.id,
                detail=f"file_status {entity.file_status.value} on a type without files",
            ))
        elif entity.file_status in TRANSIENT_STATUSES and entity.id not in busy:
            found.append(Violation(
                kind=STALE_STATUS,
                entity_type=entity.entity_type,
                entity_id=entity.id,
                detail=f"file_status {entity.file_status.value} with no transfer running",
            ))
        return found


def _as_list(value) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v]
    return [str(value)]
