"""Data model for endpoints, observations and consensus results."""

import json
from dataclasses import asdict, dataclass, field, replace
from typing import List

from rpc_monitor.errors import DecodeError

UNAVAILABLE = "unavailable"
NO_DATA = "No data"


@dataclass(frozen=True)
class Endpoint:
    address: str
    label: str


@dataclass(frozen=True)
class Observation:
    """One poll of one endpoint.

    ``address`` is internal only; it is persisted but blanked before an
    observation leaves the process (see ``public()``).
    """

    captured_at: float
    slot: int
    block_id: str
    latency_ms: int
    endpoint_label: str
    address: str = ""

    def is_valid(self) -> bool:
        """Degraded results are never persisted."""
        return self.slot != 0 and self.block_id != UNAVAILABLE

    def store_key(self) -> str:
        return f"{self.endpoint_label}:{int(self.captured_at)}"

    def public(self) -> "Observation":
        return replace(self, address="")

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict) -> "Observation":
        try:
            return cls(
                captured_at=float(data["captured_at"]),
                slot=int(data["slot"]),
                block_id=str(data["block_id"]),
                latency_ms=int(data["latency_ms"]),
                endpoint_label=str(data["endpoint_label"]),
                address=str(data.get("address", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Invalid observation record: {e}") from e

    @classmethod
    def from_json(cls, raw: bytes) -> "Observation":
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise DecodeError(f"Observation is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError("Observation record is not an object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class LeaderboardEntry:
    label: str
    value: int
    latency_ms: int
    captured_at: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ConsensusStats:
    fastest_label: str
    slowest_label: str
    fastest_latency_ms: int
    slowest_latency_ms: int
    majority_block_id: str
    majority_slot: int
    consensus_percentage: float
    total_endpoints: int
    average_latency_ms: float
    slot_spread: int
    skew: str
    latency_leaderboard: List[LeaderboardEntry] = field(default_factory=list)
    slot_leaderboard: List[LeaderboardEntry] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "ConsensusStats":
        return cls(
            fastest_label=NO_DATA,
            slowest_label=NO_DATA,
            fastest_latency_ms=0,
            slowest_latency_ms=0,
            majority_block_id=NO_DATA,
            majority_slot=0,
            consensus_percentage=0.0,
            total_endpoints=0,
            average_latency_ms=0.0,
            slot_spread=0,
            skew=NO_DATA,
        )

    def to_dict(self) -> dict:
        return asdict(self)
