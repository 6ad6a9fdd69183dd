"""
Dependency Resolver -- the order in which entity types travel.

A Tag must exist before a Memory referencing it is applied, a Memory
before its MediaItems, and so on. The order is a topological sort of
the static edges in the type table; ties between independent types
are broken by the table's declared priority so results are
reproducible.
"""

from __future__ import annotations

import heapq
import logging
from typing import Iterable, Optional

from .errors import CycleDetected
from .models import EntityType
from .schema import TYPE_TABLE, TypeSpec

logger = logging.getLogger("tripsync.dependency")


class DependencyResolver:
    """Computes upload and download orderings over entity types.

    The graph is validated on construction: a misconfigured table
    raises :class:`CycleDetected` before any cycle can run.

    Args:
        table: Type table to resolve. Defaults to the built-in table.
    """

    def __init__(self, table: tuple[TypeSpec, ...] = TYPE_TABLE):
        self._priority = {spec.entity_type: spec.priority for spec in table}
        self._deps: dict[EntityType, set[EntityType]] = {
            spec.entity_type: set(spec.depends_on) for spec in table
        }
        for deps in list(self._deps.values()):
            for dep in deps:
                self._deps.setdefault(dep, set())
                self._priority.setdefault(dep, len(self._priority) + 1)

        self._ancestors = self._compute_ancestors()

    def order_for_upload(self, types: Optional[Iterable[EntityType]] = None) -> list[EntityType]:
        """Order in which local changes are sent.

        Args:
            types: Types to order. Defaults to every known type.

        Returns:
            Types with every prerequisite ahead of its dependents.
        """
        return self._sort(types)

    def order_for_download(self, types: Optional[Iterable[EntityType]] = None) -> list[EntityType]:
        """Order in which remote changes are applied.

        Identical to the upload order: a remote record referencing an
        entity not yet known locally must never be applied first.
        """
        return self._sort(types)

    def dependencies_of(self, entity_type: EntityType) -> list[EntityType]:
        """Direct prerequisites of a type, by priority."""
        return sorted(self._deps.get(entity_type, ()), key=self._priority.get)

    def _sort(self, types: Optional[Iterable[EntityType]]) -> list[EntityType]:
        wanted = set(self._deps) if types is None else {EntityType(t) for t in types}
        unknown = wanted - set(self._deps)
        if unknown:
            raise KeyError(f"Unknown entity types: {sorted(t.value for t in unknown)}")

        # Edges restricted to the requested subset, keeping transitive
        # prerequisites that pass through types outside of it.
        pending = {t: self._ancestors[t] & wanted for t in wanted}
        heap = [(self._priority[t], t.value, t) for t, deps in pending.items() if not deps]
        heapq.heapify(heap)

        ordered: list[EntityType] = []
        while heap:
            _, _, current = heapq.heappop(heap)
            ordered.append(current)
            for t, deps in pending.items():
                if current in deps:
                    deps.discard(current)
                    if not deps:
                        heapq.heappush(heap, (self._priority[t], t.value, t))
        return ordered

    def _compute_ancestors(self) -> dict[EntityType, set[EntityType]]:
        """Transitive prerequisites per type, detecting cycles (DFS)."""
        ancestors: dict[EntityType, set[EntityType]] = {}
        visiting: list[EntityType] = []

        def visit(node: EntityType) -> set[EntityType]:
            if node in ancestors:
                return ancestors[node]
            if node in visiting:
                cycle = visiting[visiting.index(node):] + [node]
                logger.error("Dependency cycle: %s", " -> ".join(t.value for t in cycle))
                raise CycleDetected([t.value for t in cycle])
            visiting.append(node)
            result: set[EntityType] = set()
            for dep in sorted(self._deps[node], key=self._priority.get):
                result.add(dep)
                result |= visit(dep)
            visiting.pop()
            ancestors[node] = result
            return result

        for node in sorted(self._deps, key=self._priority.get):
            visit(node)
        return ancestors
