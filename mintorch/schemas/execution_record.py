"""
ExecutionRecord schema - durable proof that a recipe succeeded.

One active record per (network, recipe). A record is never edited: a run with
a different fingerprint replaces it and the old one moves to history.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionRecord:
    """
    A recipe's last successful execution on one network.

    Attributes:
        recipe: Recipe name
        network: NetworkProfile name
        fingerprint: Digest of the recipe inputs used for the run
        recorded_at: When the record was written
        steps: Step ids that ran
        elapsed_ms: Wall-clock time of the recipe's own steps
    """
    recipe: str
    network: str
    fingerprint: str
    recorded_at: datetime = field(default_factory=_utcnow)
    steps: tuple[str, ...] = ()
    elapsed_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result = {
            "recipe": self.recipe,
            "network": self.network,
            "fingerprint": self.fingerprint,
            "recorded_at": self.recorded_at.isoformat(),
            "steps": list(self.steps),
        }
        if self.elapsed_ms is not None:
            result["elapsed_ms"] = self.elapsed_ms
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRecord":
        """Deserialize from dictionary."""
        return cls(
            recipe=data["recipe"],
            network=data["network"],
            fingerprint=data["fingerprint"],
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
            steps=tuple(data.get("steps", ())),
            elapsed_ms=data.get("elapsed_ms"),
        )
