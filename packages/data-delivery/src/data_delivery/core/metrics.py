from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass


@dataclass(frozen=True)
class PhaseDuration:
    collection: str
    phase: str
    duration_ms: float


class InMemoryDeliveryMetricsCollector:
    def __init__(self) -> None:
        self.gate_submitted = 0
        self.gate_succeeded = 0
        self.gate_failed = 0
        self.gate_retried = 0
        self.gate_peak_in_flight = 0
        self.phase_durations: list[PhaseDuration] = []
        self.phase_results: dict[tuple[str, str, str], int] = defaultdict(int)
        self.invalidations: dict[str, int] = defaultdict(int)
        self.dropped_records: dict[str, int] = defaultdict(int)

    def increment_submitted(self) -> None:
        self.gate_submitted += 1

    def increment_succeeded(self) -> None:
        self.gate_succeeded += 1

    def increment_failed(self) -> None:
        self.gate_failed += 1

    def increment_retried(self) -> None:
        self.gate_retried += 1

    def observe_in_flight(self, in_flight: int) -> None:
        self.gate_peak_in_flight = max(self.gate_peak_in_flight, in_flight)

    def observe_phase(self, collection: str, phase: str, status: str, duration_ms: float) -> None:
        self.phase_durations.append(PhaseDuration(collection=collection, phase=phase, duration_ms=duration_ms))
        self.phase_results[(collection, phase, status)] += 1

    def add_invalidation(self, phase: str) -> None:
        self.invalidations[phase] += 1

    def add_dropped_records(self, kind: str, count: int) -> None:
        if count <= 0:
            return
        self.dropped_records[kind] += count
