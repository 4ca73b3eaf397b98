from __future__ import annotations

from typing import Any, Dict, List, Tuple

from hubitat_exporter import Device, HubCollector, decode_devices

AERQ: Dict[str, Any] = {
    "name": "Aeotec AerQ",
    "label": "Living Room T&H Sensor",
    "room": "Living Room",
    "attributes": {"temperature": "68.5", "humidity": "40"},
}
AERQ_LABELS = ("Aeotec AerQ", "Living Room T&H Sensor", "Living Room")


class StubClient:
    """Stands in for HubClient; replays canned payloads or raises queued errors."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls = 0

    def fetch_devices(self) -> List[Device]:
        self.calls += 1
        r = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(r, Exception):
            raise r
        return decode_devices(r)


def scrape(collector: HubCollector) -> Dict[str, Dict[Tuple[str, ...], float]]:
    """Run one collect() and index sample values by sample name and label values."""
    out: Dict[str, Dict[Tuple[str, ...], float]] = {}
    for fam in collector.collect():
        out.setdefault(fam.name, {})
        for s in fam.samples:
            out.setdefault(s.name, {})[tuple(s.labels.values())] = s.value
    return out
