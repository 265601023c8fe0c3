"""ID generation for domain objects."""

from __future__ import annotations

from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

_ALERT_NAMESPACE = uuid5(NAMESPACE_URL, "urn:pasture-risk:alert")


def new_id() -> UUID:
    """Generate a new random UUID v4 for cycles and runs."""
    return uuid4()


def stable_id(*parts: str) -> UUID:
    """Deterministic UUID v5 over *parts*.

    Used for alert identifiers so a replayed publish of the same
    transition carries the same id and consumers can deduplicate.
    """
    return uuid5(_ALERT_NAMESPACE, "|".join(parts))
