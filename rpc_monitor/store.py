"""Append-only time-series store of observations on top of LMDB.

Keys are ``"<label>:<unix-seconds>"`` and sort lexicographically, so they are
chronological within one label only. Callers bucket by label before relying
on order.
"""

import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

import lmdb

from rpc_monitor.errors import DecodeError, StorageError
from rpc_monitor.models import Observation

logger = logging.getLogger(__name__)

DEFAULT_PATH = "rpc_metrics.db"
DEFAULT_MAP_SIZE = 1 << 30  # 1 GiB, sparse on disk
RETENTION_SECONDS = 3600


def _encode_key(key: Optional[str]) -> Optional[bytes]:
    return key.encode("utf-8") if key is not None else None


class ObservationStore:
    """Shared by the poller, the retention sweeper and the API.

    Every call opens its own LMDB transaction, so the handle is safe to use
    from several threads. Readers never block the writer.
    """

    def __init__(
        self,
        path: str = DEFAULT_PATH,
        map_size: int = DEFAULT_MAP_SIZE,
        retention: float = RETENTION_SECONDS,
    ):
        self.path = path
        self.retention = retention
        try:
            self.env = lmdb.open(path, map_size=map_size, subdir=True)
        except (lmdb.Error, OSError) as e:
            raise StorageError(f"Failed to open store at {path}: {e}") from e
        logger.info(f"Opened observation store at {path}")

    def put(self, observation: Observation) -> str:
        key = observation.store_key()
        try:
            with self.env.begin(write=True) as txn:
                txn.put(key.encode("utf-8"), observation.to_json())
        except lmdb.Error as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        return key

    def scan(
        self,
        start: Optional[str] = None,
        stop: Optional[str] = None,
        reverse: bool = False,
    ) -> List[Tuple[str, Observation]]:
        """Return ``(key, observation)`` pairs with ``start <= key < stop``.

        Records that fail to decode are skipped with a warning.
        """
        start_key, stop_key = _encode_key(start), _encode_key(stop)
        raw = []
        try:
            with self.env.begin() as txn:
                cursor = txn.cursor()
                if reverse:
                    if stop_key is not None:
                        # set_range lands on the first key >= stop; step back past it
                        positioned = cursor.prev() if cursor.set_range(stop_key) else cursor.last()
                    else:
                        positioned = cursor.last()
                    items = cursor.iterprev() if positioned else ()
                    for key, value in items:
                        if start_key is not None and key < start_key:
                            break
                        raw.append((key, value))
                else:
                    positioned = cursor.set_range(start_key) if start_key is not None else cursor.first()
                    items = cursor.iternext() if positioned else ()
                    for key, value in items:
                        if stop_key is not None and key >= stop_key:
                            break
                        raw.append((key, value))
        except lmdb.Error as e:
            raise StorageError(f"Failed to scan store: {e}") from e

        records = []
        for key, value in raw:
            key_str = key.decode("utf-8", errors="replace")
            try:
                records.append((key_str, Observation.from_json(value)))
            except DecodeError as e:
                logger.warning(f"Skipping undecodable record {key_str}: {e}")
        return records

    def delete_batch(self, keys: Iterable[str]) -> int:
        """Delete all keys in one write transaction. Returns how many existed."""
        deleted = 0
        try:
            with self.env.begin(write=True) as txn:
                for key in keys:
                    if txn.delete(key.encode("utf-8")):
                        deleted += 1
        except lmdb.Error as e:
            raise StorageError(f"Failed to delete batch: {e}") from e
        return deleted

    def count(self) -> int:
        try:
            return self.env.stat()["entries"]
        except lmdb.Error as e:
            raise StorageError(f"Failed to stat store: {e}") from e

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict every observation older than the retention horizon.

        A full scan marks expired keys, which are then removed in a single
        batch. Records written after the scan are left for the next sweep.
        """
        if now is None:
            now = time.time()
        cutoff = now - self.retention
        expired = [key for key, obs in self.scan() if obs.captured_at < cutoff]
        if not expired:
            return 0
        return self.delete_batch(expired)

    def latest_per_label(self) -> Dict[str, Observation]:
        """Newest observation per label, found by walking keys backwards.

        Relies on key order approximating recency, which holds per label at
        one-second resolution.
        """
        return self.snapshot()[1]

    def query(
        self,
        rpc: Optional[str] = None,
        from_ts: Optional[int] = None,
        to_ts: Optional[int] = None,
    ) -> List[Observation]:
        """Observations matching an address substring and inclusive time bounds, newest first."""
        return self.snapshot(rpc, from_ts, to_ts)[0]

    def snapshot(
        self,
        rpc: Optional[str] = None,
        from_ts: Optional[int] = None,
        to_ts: Optional[int] = None,
    ) -> Tuple[List[Observation], Dict[str, Observation]]:
        """Filtered observations and the latest one per label, from a single reverse scan."""
        matches = []
        latest = {}
        for _, observation in self.scan(reverse=True):
            latest.setdefault(observation.endpoint_label, observation)
            if rpc and rpc not in observation.address:
                continue
            if from_ts is not None and observation.captured_at < from_ts:
                continue
            if to_ts is not None and observation.captured_at > to_ts:
                continue
            matches.append(observation)
        matches.sort(key=lambda obs: obs.captured_at, reverse=True)
        return matches, latest

    def close(self) -> None:
        self.env.close()
