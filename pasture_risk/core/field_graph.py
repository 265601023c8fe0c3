"""FieldGraph — explicit adjacency index over fields, species, treatments and rules.

Edges:
    field   --grows-->              species
    field   --received_treatment--> treatment record
    rule    --applies_to-->         species   (indexed in reverse)

The index is built once per rule snapshot and only ever references nodes
by id, so there are no object cycles.  Field edges are linked as each
field's metadata is read during the cycle.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pasture_risk.domain.errors import InconsistentContextError
from pasture_risk.domain.field import FieldContext, Treatment
from pasture_risk.domain.rules import RuleSnapshot

logger = logging.getLogger(__name__)


class FieldGraph:
    """Adjacency index used by the rule matcher for one cycle."""

    def __init__(self, snapshot: RuleSnapshot) -> None:
        self._snapshot_version = snapshot.version
        self._species_catalog = snapshot.species_catalog
        self._grows: dict[str, frozenset[str]] = {}
        self._received: dict[str, tuple[Treatment, ...]] = {}

        self._rules_by_species: dict[str, set[str]] = {}
        self._universal_rules: set[str] = set()
        for rule in snapshot.rules:
            if not rule.applicable_species:
                self._universal_rules.add(rule.rule_id)
            for species in rule.applicable_species:
                self._rules_by_species.setdefault(species, set()).add(rule.rule_id)

    @property
    def snapshot_version(self) -> str:
        return self._snapshot_version

    # ── Linking ──────────────────────────────────────────────────────────

    def link_field(self, context: FieldContext, treatments: list[Treatment] | tuple[Treatment, ...]) -> None:
        """Add grows/received_treatment edges for one field.

        Raises:
            InconsistentContextError: The field grows a species the rule
                snapshot does not know.  The field is left unlinked.
        """
        if self._species_catalog:
            unknown = sorted(context.species - self._species_catalog)
            if unknown:
                raise InconsistentContextError(
                    f"Field {context.field_id} references species not in snapshot "
                    f"{self._snapshot_version}: {', '.join(unknown)}"
                )
        self._grows[context.field_id] = context.species
        self._received[context.field_id] = tuple(
            sorted(
                (t for t in treatments if t.field_id == context.field_id),
                key=lambda t: t.applied_at,
            )
        )
        logger.debug(
            "Linked field %s: %d species, %d treatment(s)",
            context.field_id, len(context.species), len(self._received[context.field_id]),
        )

    def is_linked(self, field_id: str) -> bool:
        return field_id in self._grows

    # ── Traversal ────────────────────────────────────────────────────────

    def species_of(self, field_id: str) -> frozenset[str]:
        return self._grows.get(field_id, frozenset())

    def treatments_of(self, field_id: str) -> tuple[Treatment, ...]:
        return self._received.get(field_id, ())

    def last_treatment(self, field_id: str, treatment_type: str) -> datetime | None:
        """Most recent application of *treatment_type* on the field."""
        wanted = treatment_type.lower()
        dates = [t.applied_at for t in self.treatments_of(field_id) if t.treatment_type == wanted]
        return max(dates) if dates else None

    def candidate_rules(self, field_id: str) -> set[str]:
        """Rules reachable from the field: via its species, plus species-agnostic ones."""
        reachable = set(self._universal_rules)
        for species in self.species_of(field_id):
            reachable |= self._rules_by_species.get(species, set())
        return reachable
