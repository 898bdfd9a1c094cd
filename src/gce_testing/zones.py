"""Weighted zone selection for VM placement.

ZONES is a comma-separated list of zones with optional integer weights:

    us-central1-a=2,us-central1-b,us-west1-b=3

Zones are handed out in smooth weighted round-robin order, so load spreads
across zones without bursts: `a=2,b=1` yields a, b, a, a, b, a, ...
"""

import threading
from collections.abc import Sequence

from gce_testing.exceptions import ConfigurationError


def parse_zone_spec(spec: str) -> list[tuple[str, int]]:
    """Parse `zone[=weight],...` into (zone, weight) pairs.

    Raises:
        ConfigurationError: Empty spec, empty zone name, or a weight that is
            not a positive integer
    """
    entries: list[tuple[str, int]] = []
    for raw in spec.split(","):
        entry = raw.strip()
        if not entry:
            raise ConfigurationError(f"empty entry in zone spec {spec!r}")
        zone, sep, weight_text = entry.partition("=")
        zone = zone.strip()
        if not zone:
            raise ConfigurationError(f"missing zone name in {entry!r} (zone spec {spec!r})")
        weight = 1
        if sep:
            try:
                weight = int(weight_text.strip())
            except ValueError:
                raise ConfigurationError(f"weight of zone {zone!r} is not an integer: {weight_text!r}") from None
            if weight < 1:
                raise ConfigurationError(f"weight of zone {zone!r} must be positive, got {weight}")
        entries.append((zone, weight))
    return entries


def _smooth_round_robin(entries: Sequence[tuple[str, int]]) -> list[str]:
    """One full cycle of smooth weighted round-robin (nginx algorithm).

    Each step every zone gains its weight; the zone with the highest running
    total is picked and pays back the sum of all weights. Ties go to the
    zone listed first.
    """
    total = sum(weight for _, weight in entries)
    current = [0] * len(entries)
    cycle: list[str] = []
    for _ in range(total):
        for i, (_, weight) in enumerate(entries):
            current[i] += weight
        best = max(range(len(entries)), key=lambda i: (current[i], -i))
        current[best] -= total
        cycle.append(entries[best][0])
    return cycle


class ZoneSelector:
    """Thread-safe weighted round-robin over a fixed set of zones.

    Every window of sum(weights) consecutive calls to next() returns each
    zone exactly `weight` times. A fresh selector always starts the cycle
    from the beginning.
    """

    def __init__(self, entries: Sequence[tuple[str, int]]) -> None:
        if not entries:
            raise ConfigurationError("at least one zone is required")
        for zone, weight in entries:
            if weight < 1:
                raise ConfigurationError(f"weight of zone {zone!r} must be positive, got {weight}")
        self._entries = list(entries)
        self._cycle = _smooth_round_robin(self._entries)
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_spec(cls, spec: str) -> "ZoneSelector":
        if not spec.strip():
            raise ConfigurationError("zone spec is empty; set ZONES (e.g. us-central1-a=2,us-central1-b)")
        return cls(parse_zone_spec(spec))

    @property
    def zones(self) -> list[str]:
        return [zone for zone, _ in self._entries]

    def next(self) -> str:
        """Next zone in the cycle."""
        with self._lock:
            zone = self._cycle[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._cycle)
        return zone
