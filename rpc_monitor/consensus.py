from collections import Counter
from typing import Iterable

from rpc_monitor.models import ConsensusStats, LeaderboardEntry, Observation

LEADERBOARD_SIZE = 4


def majority(counts: Counter):
    """Most frequent value; ties go to the smallest value."""
    return min(counts.items(), key=lambda item: (-item[1], item[0]))


def describe_skew(slot_spread: int) -> str:
    if slot_spread == 0:
        return "no skew"
    if slot_spread > 0:
        return f"fastest ahead by {abs(slot_spread)} slots"
    return f"slowest ahead by {abs(slot_spread)} slots"


def _leaderboard_entry(observation: Observation, value: int) -> LeaderboardEntry:
    return LeaderboardEntry(
        label=observation.endpoint_label,
        value=value,
        latency_ms=observation.latency_ms,
        captured_at=observation.captured_at,
    )


def analyze(observations: Iterable[Observation], leaderboard_size: int = LEADERBOARD_SIZE) -> ConsensusStats:
    """Compute agreement and rankings over the latest observation of each endpoint.

    The slot spread is measured between the fastest and slowest endpoint by
    latency, so it shows whether the quickest node is also the most current.
    """
    observations = list(observations)
    if not observations:
        return ConsensusStats.empty()

    total = len(observations)
    block_id, block_votes = majority(Counter(obs.block_id for obs in observations))
    majority_slot, _ = majority(Counter(obs.slot for obs in observations))

    # min/max keep the first of equal candidates
    fastest = min(observations, key=lambda obs: obs.latency_ms)
    slowest = max(observations, key=lambda obs: obs.latency_ms)
    slot_spread = fastest.slot - slowest.slot

    latency_board = sorted(
        (_leaderboard_entry(obs, obs.latency_ms) for obs in observations),
        key=lambda entry: entry.value,
    )
    slot_board = sorted(
        (_leaderboard_entry(obs, obs.slot) for obs in observations),
        key=lambda entry: entry.value,
        reverse=True,
    )

    return ConsensusStats(
        fastest_label=fastest.endpoint_label,
        slowest_label=slowest.endpoint_label,
        fastest_latency_ms=fastest.latency_ms,
        slowest_latency_ms=slowest.latency_ms,
        majority_block_id=block_id,
        majority_slot=majority_slot,
        consensus_percentage=(block_votes / total) * 100,
        total_endpoints=total,
        average_latency_ms=sum(obs.latency_ms for obs in observations) / total,
        slot_spread=slot_spread,
        skew=describe_skew(slot_spread),
        latency_leaderboard=latency_board[:leaderboard_size],
        slot_leaderboard=slot_board[:leaderboard_size],
    )
