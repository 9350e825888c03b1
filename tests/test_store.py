import time

import pytest

from rpc_monitor.errors import StorageError
from rpc_monitor.models import Observation
from rpc_monitor.store import ObservationStore

from helpers import make_observation

NOW = 1700000000.0


def test_put_then_scan_returns_records_in_key_order(store) -> None:
    store.put(make_observation("beta", captured_at=NOW + 5))
    store.put(make_observation("alpha", captured_at=NOW + 10))
    store.put(make_observation("alpha", captured_at=NOW))

    keys = [key for key, _ in store.scan()]
    assert keys == [f"alpha:{int(NOW)}", f"alpha:{int(NOW + 10)}", f"beta:{int(NOW + 5)}"]
    assert [key for key, _ in store.scan(reverse=True)] == list(reversed(keys))


def test_put_persists_full_observation(store) -> None:
    obs = make_observation("alpha", captured_at=NOW + 0.25, address="https://alpha.example.org")
    key = store.put(obs)
    assert key == f"alpha:{int(NOW)}"
    assert store.scan() == [(key, obs)]


def test_scan_range_is_start_inclusive_stop_exclusive(store) -> None:
    for offset in range(5):
        store.put(make_observation("alpha", captured_at=NOW + offset))

    start, stop = f"alpha:{int(NOW + 1)}", f"alpha:{int(NOW + 4)}"
    forward = [key for key, _ in store.scan(start=start, stop=stop)]
    backward = [key for key, _ in store.scan(start=start, stop=stop, reverse=True)]

    assert forward == [f"alpha:{int(NOW + i)}" for i in (1, 2, 3)]
    assert backward == list(reversed(forward))


def test_reverse_scan_with_stop_past_every_key(store) -> None:
    store.put(make_observation("alpha", captured_at=NOW))
    assert [key for key, _ in store.scan(stop="zzz", reverse=True)] == [f"alpha:{int(NOW)}"]
    assert store.scan(stop="a", reverse=True) == []


def test_scan_empty_store(store) -> None:
    assert store.scan() == []
    assert store.scan(reverse=True) == []
    assert store.latest_per_label() == {}


def test_scan_skips_undecodable_records(store) -> None:
    store.put(make_observation("alpha", captured_at=NOW))
    with store.env.begin(write=True) as txn:
        txn.put(b"broken:1", b"not json")

    assert [key for key, _ in store.scan()] == [f"alpha:{int(NOW)}"]


def test_delete_batch_counts_existing_keys(store) -> None:
    first = store.put(make_observation("alpha", captured_at=NOW))
    second = store.put(make_observation("alpha", captured_at=NOW + 1))

    assert store.delete_batch([first, second, "missing:1"]) == 2
    assert store.count() == 0


def test_sweep_removes_only_expired_observations(store) -> None:
    now = time.time()
    store.put(make_observation("alpha", captured_at=now - 2 * 3600))
    fresh = make_observation("alpha", captured_at=now - 30 * 60)
    store.put(fresh)

    assert store.sweep(now=now) == 1
    assert [obs for _, obs in store.scan()] == [fresh]
    assert store.sweep(now=now) == 0


def test_sweep_honours_configured_retention(tmp_path) -> None:
    store = ObservationStore(str(tmp_path / "short.db"), map_size=1 << 24, retention=60)
    try:
        store.put(make_observation("alpha", captured_at=NOW - 120))
        store.put(make_observation("beta", captured_at=NOW - 30))
        assert store.sweep(now=NOW) == 1
        assert [obs.endpoint_label for _, obs in store.scan()] == ["beta"]
    finally:
        store.close()


def test_latest_per_label_keeps_newest_sample(store) -> None:
    for offset in range(3):
        store.put(make_observation("alpha", slot=100 + offset, captured_at=NOW + offset))
    store.put(make_observation("beta", slot=7, captured_at=NOW))

    latest = store.latest_per_label()

    assert set(latest) == {"alpha", "beta"}
    assert latest["alpha"].slot == 102
    assert latest["beta"].slot == 7


def _seed_two_endpoints(store):
    for offset in range(0, 1200, 60):
        store.put(make_observation("A", captured_at=NOW + offset, address="https://alpha.example.org"))
        store.put(make_observation("B", captured_at=NOW + offset, address="https://beta.example.org"))


def test_query_filters_by_address_substring(store) -> None:
    _seed_two_endpoints(store)

    results = store.query(rpc="alpha")

    assert results
    assert {obs.endpoint_label for obs in results} == {"A"}


def test_query_time_bounds_are_inclusive(store) -> None:
    _seed_two_endpoints(store)
    from_ts, to_ts = int(NOW + 120), int(NOW + 720)

    results = store.query(from_ts=from_ts, to_ts=to_ts)

    assert results
    assert all(from_ts <= obs.captured_at <= to_ts for obs in results)
    captured = {obs.captured_at for obs in results}
    assert NOW + 120 in captured
    assert NOW + 720 in captured
    assert len(results) == 2 * 11


def test_query_returns_newest_first(store) -> None:
    _seed_two_endpoints(store)
    captured = [obs.captured_at for obs in store.query()]
    assert captured == sorted(captured, reverse=True)


def test_open_failure_raises_storage_error(tmp_path) -> None:
    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("x")
    with pytest.raises(StorageError):
        ObservationStore(str(not_a_dir / "db"))


def test_observation_types_survive_storage(store) -> None:
    store.put(make_observation("alpha", slot=2 ** 40, latency_ms=0, captured_at=NOW))
    (_, obs), = store.scan()
    assert isinstance(obs, Observation)
    assert obs.slot == 2 ** 40
