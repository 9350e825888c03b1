import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import List, Optional

from rpc_monitor.errors import StorageError
from rpc_monitor.metrics import (
    DROPPED_OBSERVATIONS_COUNTER,
    LATENCY_GAUGE,
    RETENTION_DELETED_COUNTER,
    SLOT_GAUGE,
    STORAGE_ERRORS_COUNTER,
)
from rpc_monitor.models import Endpoint

logger = logging.getLogger(__name__)

POLL_INTERVAL = 2.0
SWEEP_INTERVAL = 60.0


class Poller:
    """Polls every endpoint concurrently, one cycle at a time.

    The next cycle starts only after every fetch of the current one has
    finished and the interval has elapsed, so cycles never overlap.
    """

    def __init__(
        self,
        endpoints: List[Endpoint],
        fetcher,
        store,
        interval: float = POLL_INTERVAL,
        stop_event: Optional[threading.Event] = None,
    ):
        self.endpoints = list(endpoints)
        self.fetcher = fetcher
        self.store = store
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.cycles = 0
        self.thread = None
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.endpoints)), thread_name_prefix="poll"
        )

    def start(self):
        self.thread = threading.Thread(target=self.run, name="poller", daemon=True)
        self.thread.start()
        logger.info(
            f"Started poller for {len(self.endpoints)} endpoints every {self.interval}s"
        )

    def stop(self):
        self.stop_event.set()
        if self.thread:
            self.thread.join()
        self._executor.shutdown(wait=True)

    def run(self):
        while not self.stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Error in poll cycle: {e}", exc_info=True)
            self.stop_event.wait(self.interval)

    def run_cycle(self) -> int:
        """Fetch every endpoint once and return how many observations were stored."""
        futures = [self._executor.submit(self._poll_endpoint, ep) for ep in self.endpoints]
        wait(futures)
        self.cycles += 1
        stored = 0
        for future in futures:
            try:
                stored += int(future.result())
            except Exception as e:
                logger.error(f"Unexpected error while polling: {e}", exc_info=True)
        return stored

    def _poll_endpoint(self, endpoint: Endpoint) -> bool:
        result = self.fetcher.fetch(endpoint)
        observation = result.observation

        if not observation.is_valid():
            DROPPED_OBSERVATIONS_COUNTER.labels(endpoint=endpoint.label).inc()
            reasons = "; ".join(f"{tier.value}: {err}" for tier, err in result.errors)
            logger.warning(
                f"Dropped observation from {endpoint.label} "
                f"(slot={observation.slot}, block_id={observation.block_id}) {reasons}"
            )
            return False

        try:
            self.store.put(observation)
        except StorageError as e:
            STORAGE_ERRORS_COUNTER.labels(operation="put").inc()
            logger.error(f"Failed to store observation from {endpoint.label}: {e}")
            return False

        SLOT_GAUGE.labels(endpoint=endpoint.label).set(observation.slot)
        LATENCY_GAUGE.labels(endpoint=endpoint.label).set(observation.latency_ms / 1000.0)
        logger.debug(
            f"[{endpoint.label}] Slot: {observation.slot}, Block: {observation.block_id} "
            f"({observation.latency_ms}ms via {result.tier.value}, data calls {result.attempt_latency_ms}ms)"
        )
        return True


class RetentionSweeper:
    """Evicts expired observations on a fixed cadence."""

    def __init__(
        self,
        store,
        interval: float = SWEEP_INTERVAL,
        stop_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.thread = None

    def start(self):
        self.thread = threading.Thread(target=self.run, name="retention", daemon=True)
        self.thread.start()

    def stop(self):
        self.stop_event.set()
        if self.thread:
            self.thread.join()

    def run(self):
        while not self.stop_event.is_set():
            self.sweep_once()
            self.stop_event.wait(self.interval)

    def sweep_once(self) -> int:
        try:
            deleted = self.store.sweep()
        except StorageError as e:
            STORAGE_ERRORS_COUNTER.labels(operation="sweep").inc()
            logger.error(f"Retention sweep aborted: {e}")
            return 0
        except Exception as e:
            logger.error(f"Error in retention sweep: {e}", exc_info=True)
            return 0
        if deleted:
            RETENTION_DELETED_COUNTER.inc(deleted)
            logger.info(f"Retention sweep removed {deleted} observations")
        return deleted
