import logging
import threading
import time

from rpc_monitor.errors import StorageError
from rpc_monitor.fetcher import FetchResult, ProtocolTier
from rpc_monitor.models import UNAVAILABLE, Endpoint
from rpc_monitor.poller import Poller, RetentionSweeper

from helpers import make_observation

ALPHA = Endpoint("https://alpha.example.org", "alpha")
BETA = Endpoint("https://beta.example.org", "beta")
GAMMA = Endpoint("https://gamma.example.org", "gamma")


class FakeFetcher:
    def __init__(self, plan):
        self.plan = plan
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, endpoint):
        with self._lock:
            self.calls.append(endpoint.label)
        outcome = self.plan[endpoint.label]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, FetchResult):
            return outcome
        return FetchResult(ProtocolTier.PREFERRED, outcome)


class FailingStore:
    def put(self, observation):
        raise StorageError("disk full")

    def sweep(self):
        raise StorageError("read failed")


def test_cycle_stores_valid_observations(store) -> None:
    fetcher = FakeFetcher(
        {
            "alpha": make_observation("alpha", captured_at=1000.0),
            "beta": make_observation("beta", captured_at=1000.0),
        }
    )
    poller = Poller([ALPHA, BETA], fetcher, store)
    try:
        assert poller.run_cycle() == 2
    finally:
        poller.stop()

    assert sorted(fetcher.calls) == ["alpha", "beta"]
    assert set(store.latest_per_label()) == {"alpha", "beta"}


def test_degraded_observations_are_never_stored(store) -> None:
    fetcher = FakeFetcher(
        {
            "alpha": make_observation("alpha", slot=0),
            "beta": make_observation("beta", block_id=UNAVAILABLE),
            "gamma": make_observation("gamma"),
        }
    )
    poller = Poller([ALPHA, BETA, GAMMA], fetcher, store)
    try:
        assert poller.run_cycle() == 1
    finally:
        poller.stop()

    assert [obs.endpoint_label for _, obs in store.scan()] == ["gamma"]


def test_one_endpoint_failure_does_not_affect_others(store) -> None:
    fetcher = FakeFetcher(
        {
            "alpha": RuntimeError("boom"),
            "beta": make_observation("beta"),
        }
    )
    poller = Poller([ALPHA, BETA], fetcher, store)
    try:
        assert poller.run_cycle() == 1
    finally:
        poller.stop()

    assert set(store.latest_per_label()) == {"beta"}


def test_storage_errors_are_contained() -> None:
    fetcher = FakeFetcher({"alpha": make_observation("alpha")})
    poller = Poller([ALPHA], fetcher, FailingStore())
    try:
        assert poller.run_cycle() == 0
    finally:
        poller.stop()


def test_endpoints_are_fetched_concurrently(store) -> None:
    barrier = threading.Barrier(3, timeout=5)

    def slow(label):
        def produce():
            # Every fetch must be in flight at once to pass the barrier
            barrier.wait()
            return make_observation(label)
        return produce

    fetcher = FakeFetcher({ep.label: slow(ep.label) for ep in (ALPHA, BETA, GAMMA)})
    poller = Poller([ALPHA, BETA, GAMMA], fetcher, store)
    try:
        assert poller.run_cycle() == 3
    finally:
        poller.stop()


def test_background_loop_runs_until_stopped(store) -> None:
    counter = {"n": 0}

    def produce():
        counter["n"] += 1
        # Distinct seconds so each cycle gets its own key
        return make_observation("alpha", slot=counter["n"], captured_at=1000.0 + counter["n"])

    poller = Poller([ALPHA], FakeFetcher({"alpha": produce}), store, interval=0.01)
    poller.start()
    deadline = time.time() + 5
    while poller.cycles < 3 and time.time() < deadline:
        time.sleep(0.01)
    poller.stop()

    assert poller.cycles >= 3
    assert not poller.thread.is_alive()
    assert store.count() >= 3


def test_next_cycle_waits_for_slowest_fetch_and_interval(store) -> None:
    interval = 0.2
    release = threading.Event()
    alpha_starts, beta_finishes = [], []

    def fast():
        alpha_starts.append(time.monotonic())
        return make_observation("alpha", slot=len(alpha_starts), captured_at=1000.0 + len(alpha_starts))

    def blocked():
        release.wait(timeout=5)
        beta_finishes.append(time.monotonic())
        return make_observation("beta", captured_at=1000.0 + len(beta_finishes))

    poller = Poller([ALPHA, BETA], FakeFetcher({"alpha": fast, "beta": blocked}), store, interval=interval)
    poller.start()
    try:
        time.sleep(0.5)
        # beta is still in flight, so the first cycle has not ended
        assert len(alpha_starts) == 1
        assert poller.cycles == 0

        release.set()
        deadline = time.monotonic() + 5
        while len(alpha_starts) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        release.set()
        poller.stop()

    assert len(alpha_starts) >= 2
    assert alpha_starts[1] - beta_finishes[0] >= interval - 0.01


def test_poll_log_reports_both_latencies(store, caplog) -> None:
    result = FetchResult(ProtocolTier.FALLBACK, make_observation("alpha", latency_ms=42), attempt_latency_ms=17)
    poller = Poller([ALPHA], FakeFetcher({"alpha": lambda: result}), store)
    try:
        with caplog.at_level(logging.DEBUG, logger="rpc_monitor.poller"):
            poller.run_cycle()
    finally:
        poller.stop()

    assert any("42ms via fallback, data calls 17ms" in message for message in caplog.messages)


def test_sweeper_removes_expired_records(store) -> None:
    now = time.time()
    store.put(make_observation("alpha", captured_at=now - 7200))
    store.put(make_observation("alpha", captured_at=now - 60))

    assert RetentionSweeper(store).sweep_once() == 1
    assert store.count() == 1


def test_sweeper_survives_storage_errors() -> None:
    assert RetentionSweeper(FailingStore()).sweep_once() == 0


def test_sweeper_loop_stops_on_shared_event(store) -> None:
    stop_event = threading.Event()
    sweeper = RetentionSweeper(store, interval=60, stop_event=stop_event)
    sweeper.start()
    stop_event.set()
    sweeper.thread.join(timeout=5)
    assert not sweeper.thread.is_alive()
