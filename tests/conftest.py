import pytest

from rpc_monitor.store import ObservationStore


@pytest.fixture
def store(tmp_path):
    store = ObservationStore(str(tmp_path / "observations.db"), map_size=16 * 1024 * 1024)
    yield store
    store.close()
