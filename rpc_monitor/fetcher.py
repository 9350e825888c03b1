"""Resilient fetch client.

A poll walks an ordered list of protocol tiers until one returns the chain
state, then issues a separate ``getHealth`` call to measure latency, so the
reported figure does not depend on which tier produced the data.
"""

import logging
import threading
import time
from concurrent.futures import Executor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from rpc_monitor import rpc
from rpc_monitor.errors import FetchFailure
from rpc_monitor.metrics import FETCH_TIER_COUNTER, TIER_FAILURE_COUNTER
from rpc_monitor.models import UNAVAILABLE, Endpoint, Observation

logger = logging.getLogger(__name__)

# Reported when the latency probe fails on both transports
FAILED_LATENCY_MS = int(rpc.REQUEST_TIMEOUT * 1000)
STATS_LOG_EVERY = 50


class ProtocolTier(Enum):
    PREFERRED = "preferred"
    FALLBACK = "fallback"
    LEGACY = "legacy"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ChainState:
    slot: int
    block_id: str
    latency_ms: int = 0

    @property
    def complete(self) -> bool:
        return self.slot != 0 and self.block_id != UNAVAILABLE


@dataclass
class FetchResult:
    tier: ProtocolTier
    observation: Observation
    errors: List[Tuple[ProtocolTier, FetchFailure]] = field(default_factory=list)
    # Data-call duration of the tier whose answer was used; 0 if none answered
    attempt_latency_ms: int = 0


class ConcurrentTier:
    """Issues getSlot and getLatestBlockhash at once over one pooled transport.

    The attempt latency is the slower of the two calls.
    """

    def __init__(self, tier: ProtocolTier, transport, executor: Executor):
        self.tier = tier
        self.transport = transport
        self.executor = executor

    def attempt(self, endpoint: Endpoint) -> ChainState:
        slot_future = self.executor.submit(rpc.get_slot, self.transport, endpoint.address)
        block_future = self.executor.submit(
            rpc.get_block_id, self.transport, endpoint.address
        )
        wait([slot_future, block_future])
        slot, slot_ms = slot_future.result()
        block_id, block_ms = block_future.result()
        return ChainState(slot, block_id, max(slot_ms, block_ms))


class SequentialTier:
    """Plain blocking calls, one after the other.

    Returns whatever it managed to obtain; only a double failure is raised.
    """

    def __init__(self, tier: ProtocolTier, transport):
        self.tier = tier
        self.transport = transport

    def attempt(self, endpoint: Endpoint) -> ChainState:
        failures = []
        slot, slot_ms = 0, 0
        block_id, block_ms = UNAVAILABLE, 0
        try:
            slot, slot_ms = rpc.get_slot(self.transport, endpoint.address)
        except FetchFailure as e:
            failures.append(e)
        try:
            block_id, block_ms = rpc.get_block_id(self.transport, endpoint.address)
        except FetchFailure as e:
            failures.append(e)

        if len(failures) == 2:
            raise failures[0]
        if failures:
            logger.debug(f"Partial {self.tier.value} result for {endpoint.label}: {failures[0]}")
        return ChainState(slot, block_id, slot_ms + block_ms)


class LatencyProbe:
    """Measures one pure network round trip of a lightweight health call.

    The request body is serialized once up front and the response body is
    never parsed, so neither shows up in the figure.
    """

    METHOD = "getHealth"

    def __init__(self, primary, secondary):
        self.primary = primary
        self.secondary = secondary
        self._body = rpc.encode_request(self.METHOD)

    def measure(self, endpoint: Endpoint) -> int:
        for transport in (self.primary, self.secondary):
            try:
                response = transport.post(endpoint.address, self._body)
                rpc.check_status(response)
                return response.elapsed_ms
            except FetchFailure as e:
                logger.debug(
                    f"Latency probe via {transport.name} failed for {endpoint.label}: {e}"
                )
        return FAILED_LATENCY_MS


class ProtocolStats:
    """Counts which tier satisfied each poll.

    Legacy successes count as fallback; degraded polls only count towards
    ``total``.
    """

    def __init__(self, log_every: int = STATS_LOG_EVERY):
        self.log_every = log_every
        self._lock = threading.Lock()
        self._preferred = 0
        self._fallback = 0
        self._total = 0

    @property
    def preferred(self) -> int:
        return self._preferred

    @property
    def fallback(self) -> int:
        return self._fallback

    @property
    def total(self) -> int:
        return self._total

    def record(self, tier: ProtocolTier) -> None:
        with self._lock:
            if tier is ProtocolTier.PREFERRED:
                self._preferred += 1
            elif tier is not ProtocolTier.DEGRADED:
                self._fallback += 1
            self._total += 1
            total, preferred, fallback = self._total, self._preferred, self._fallback

        FETCH_TIER_COUNTER.labels(tier=tier.value).inc()

        if self.log_every and total % self.log_every == 0:
            satisfied = preferred + fallback
            ratio = (preferred / satisfied) * 100 if satisfied else 0.0
            logger.info(
                f"Protocol usage after {total} polls: preferred {preferred} ({ratio:.1f}%), "
                f"fallback {fallback}, degraded {total - satisfied}"
            )


class FetchClient:
    """Produces one Observation per call. Never raises a fetch-layer error."""

    def __init__(
        self,
        tiers: Sequence,
        probe: LatencyProbe,
        stats: Optional[ProtocolStats] = None,
        clock: Callable[[], float] = time.time,
        transports: Sequence = (),
    ):
        self.tiers = list(tiers)
        self.probe = probe
        self.stats = stats or ProtocolStats()
        self.clock = clock
        self._transports = list(transports)

    @classmethod
    def build(cls, executor: Executor, stats: Optional[ProtocolStats] = None) -> "FetchClient":
        """Construct the three transports and wire them into tiers."""
        preferred = rpc.HttpxTransport.build(http2=True)
        fallback = rpc.SessionTransport.build()
        legacy = rpc.LegacyTransport()
        tiers = [
            ConcurrentTier(ProtocolTier.PREFERRED, preferred, executor),
            ConcurrentTier(ProtocolTier.FALLBACK, fallback, executor),
            SequentialTier(ProtocolTier.LEGACY, legacy),
        ]
        return cls(
            tiers,
            LatencyProbe(preferred, fallback),
            stats=stats,
            transports=[preferred, fallback, legacy],
        )

    def fetch(self, endpoint: Endpoint) -> FetchResult:
        errors = []
        state = None
        tier = ProtocolTier.DEGRADED

        for strategy in self.tiers:
            try:
                state = strategy.attempt(endpoint)
            except FetchFailure as e:
                errors.append((strategy.tier, e))
                TIER_FAILURE_COUNTER.labels(
                    tier=strategy.tier.value, kind=type(e).__name__
                ).inc()
                logger.debug(f"{strategy.tier.value} tier failed for {endpoint.label}: {e}")
                continue
            if state.complete:
                tier = strategy.tier
            break

        if tier is ProtocolTier.DEGRADED:
            state = state or ChainState(0, UNAVAILABLE)
            latency_ms = FAILED_LATENCY_MS
        else:
            latency_ms = self.probe.measure(endpoint)

        observation = Observation(
            captured_at=self.clock(),
            slot=state.slot,
            block_id=state.block_id,
            latency_ms=latency_ms,
            endpoint_label=endpoint.label,
            address=endpoint.address,
        )
        self.stats.record(tier)
        return FetchResult(tier, observation, errors, attempt_latency_ms=state.latency_ms)

    def close(self) -> None:
        for transport in self._transports:
            transport.close()
