from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

IdentityKey = Tuple[int, int, int]


@dataclass(frozen=True)
class ResourceRecord:
    """
    A corporation blueprint as reported by ESI.

    ``type_id``, ``location_id`` and ``quantity`` identify the blueprint. Two records with the same identity
    key are the same logical blueprint. Quantity is -1 for an original and -2 for a copy; a positive quantity
    is a stack of originals. Runs is -1 for originals.
    """

    type_id: int
    location_id: int
    quantity: int
    material_efficiency: int
    time_efficiency: int
    runs: int

    @property
    def identity_key(self) -> IdentityKey:
        return (self.type_id, self.location_id, self.quantity)

    def same_quality(self, other: "ResourceRecord") -> bool:
        """True when nothing a reconciliation cares about has changed between self and ``other``."""
        return (
            self.type_id == other.type_id
            and self.material_efficiency == other.material_efficiency
            and self.time_efficiency == other.time_efficiency
            and self.runs == other.runs
        )

    @classmethod
    def from_esi(cls, payload: Dict[str, Any]) -> "ResourceRecord":
        return cls(
            type_id=int(payload["type_id"]),
            location_id=int(payload["location_id"]),
            quantity=int(payload["quantity"]),
            material_efficiency=int(payload["material_efficiency"]),
            time_efficiency=int(payload["time_efficiency"]),
            runs=int(payload["runs"]),
        )

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class EventKind(str, Enum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class ReconciliationEvent:
    """
    One detected change in a corporation's blueprints.

    ``before`` is None for ADDED and ``after`` is None for REMOVED.
    """

    id: str
    corporation_id: int
    kind: EventKind
    before: Optional[ResourceRecord]
    after: Optional[ResourceRecord]
    observed_at: datetime

    @property
    def record(self) -> ResourceRecord:
        """The record the event is about: the new state, or the old one for removals."""
        if self.after is not None:
            return self.after
        if self.before is not None:
            return self.before
        raise ValueError(f"event {self.id} has neither a before nor an after record")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "corporation_id": self.corporation_id,
            "kind": self.kind.value,
            "before": self.before.to_dict() if self.before is not None else None,
            "after": self.after.to_dict() if self.after is not None else None,
            "observed_at": self.observed_at.isoformat(),
        }
