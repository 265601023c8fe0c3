"""Rule sources — versioned, read-only snapshots of the advisory rule base.

A snapshot is loaded between cycles and used unchanged for a whole cycle.
The version is a content hash, so two loads of identical rules share a
version.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from pasture_risk.domain.errors import CorruptRuleSnapshotError
from pasture_risk.domain.rules import AdvisoryRule, RuleSnapshot

logger = logging.getLogger(__name__)


def _rule_payload(rule: AdvisoryRule) -> dict:
    data = rule.model_dump(mode="json")
    data["applicable_species"] = sorted(data["applicable_species"])
    return data


def snapshot_version(rules: Iterable[AdvisoryRule], species: Iterable[str] = ()) -> str:
    payload = json.dumps(
        {"rules": [_rule_payload(r) for r in rules], "species": sorted(species)},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def default_rules() -> list[AdvisoryRule]:
    """The documented pasture advisories.  Not assumed exhaustive."""
    return [
        AdvisoryRule(
            rule_id="irrigate-dry-pasture",
            priority=1,
            trigger_predicate="moisture_low AND NOT recent_irrigation",
            action="Schedule irrigation within 48 hours",
            expected_outcome="Soil moisture restored above 20%",
            treatment_type="irrigation",
        ),
        AdvisoryRule(
            rule_id="rest-steep-paddock",
            priority=1,
            trigger_predicate="overgrazing_slope",
            action="Remove stock from the paddock and rest for 21 days",
            expected_outcome="Utilization below 40% and reduced erosion risk",
        ),
        AdvisoryRule(
            rule_id="defer-grazing-drought",
            priority=2,
            trigger_predicate="moisture_low AND (recent_grazing OR ndvi_decline)",
            action="Defer grazing until moisture recovers",
            expected_outcome="Canopy recovery within two weeks",
        ),
        AdvisoryRule(
            rule_id="improve-drainage",
            priority=2,
            trigger_predicate="moisture_excess",
            action="Clear drains and keep stock off saturated ground",
            expected_outcome="Reduced pugging and root anoxia",
        ),
        AdvisoryRule(
            rule_id="apply-lime",
            priority=3,
            trigger_predicate="soil_acidic",
            action="Apply agricultural lime at 2.5 t/ha",
            expected_outcome="Soil pH raised towards 6.2 within a season",
            treatment_type="lime",
        ),
        AdvisoryRule(
            rule_id="overseed-legumes",
            priority=3,
            trigger_predicate="ndvi_decline AND NOT moisture_low",
            applicable_species=frozenset({"white_clover", "red_clover"}),
            action="Overseed clover in thinning patches",
            expected_outcome="Sward density recovered",
            treatment_type="reseeding",
        ),
        AdvisoryRule(
            rule_id="heat-shelter-water",
            priority=2,
            trigger_predicate="heat_stress",
            action="Provide shade and additional water points for stock",
            expected_outcome="Reduced heat stress in grazing animals",
        ),
        AdvisoryRule(
            rule_id="apply-nitrogen",
            priority=4,
            trigger_predicate="nitrogen_low AND NOT moisture_low",
            applicable_species=frozenset({"perennial_ryegrass", "cocksfoot", "tall_fescue"}),
            action="Apply 30 kg N/ha",
            expected_outcome="Dry matter growth response within 3 weeks",
            treatment_type="fertiliser",
        ),
    ]


DEFAULT_SPECIES = frozenset(
    {"perennial_ryegrass", "white_clover", "red_clover", "cocksfoot", "tall_fescue", "chicory"}
)


class StaticRuleSource:
    """Serves a fixed rule list; ``replace`` swaps it between cycles."""

    def __init__(
        self,
        rules: Iterable[AdvisoryRule] | None = None,
        species_catalog: Iterable[str] | None = None,
    ) -> None:
        self._rules: tuple[AdvisoryRule, ...] = ()
        self._species: frozenset[str] = frozenset()
        self.replace(
            default_rules() if rules is None else rules,
            DEFAULT_SPECIES if species_catalog is None else species_catalog,
        )
        self.load_count = 0

    def replace(self, rules: Iterable[AdvisoryRule], species_catalog: Iterable[str] | None = None) -> None:
        self._rules = tuple(rules)
        if species_catalog is not None:
            self._species = frozenset(species_catalog)

    async def load_rules(self) -> RuleSnapshot:
        self.load_count += 1
        return RuleSnapshot(
            version=snapshot_version(self._rules, self._species),
            rules=self._rules,
            species_catalog=self._species,
        )


class JsonRuleSource:
    """Loads rules from a JSON document.

    Expected shape::

        {"species": ["perennial_ryegrass", ...],
         "rules": [{"rule_id": ..., "priority": ..., ...}, ...]}
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def load_rules(self) -> RuleSnapshot:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            rules = tuple(AdvisoryRule.model_validate(r) for r in raw.get("rules", []))
            species = frozenset(raw.get("species", []))
        except (OSError, ValueError, ValidationError, AttributeError) as exc:
            raise CorruptRuleSnapshotError(f"Cannot load rules from {self._path}: {exc}") from exc
        logger.info("Loaded %d rule(s) from %s", len(rules), self._path)
        return RuleSnapshot(
            version=snapshot_version(rules, species),
            rules=rules,
            species_catalog=species,
        )
