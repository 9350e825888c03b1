"""Query API: filtered observations plus consensus over the latest snapshot."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from rpc_monitor.consensus import analyze
from rpc_monitor.errors import StorageError
from rpc_monitor.models import ConsensusStats, Observation

logger = logging.getLogger(__name__)


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """Unix seconds, or None when absent or unparseable."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def query_metrics(
    store,
    rpc: Optional[str] = None,
    from_ts: Optional[int] = None,
    to_ts: Optional[int] = None,
) -> Tuple[List[Observation], ConsensusStats]:
    """Matching observations (addresses blanked) and unfiltered consensus stats."""
    matches, latest = store.snapshot(rpc, from_ts, to_ts)
    observations = [obs.public() for obs in matches]
    stats = analyze(latest.values())
    return observations, stats


def metrics_payload(store, params: Dict[str, List[str]]) -> list:
    def first(name):
        values = params.get(name)
        return values[0] if values else None

    observations, stats = query_metrics(
        store,
        rpc=first("rpc"),
        from_ts=parse_timestamp(first("from")),
        to_ts=parse_timestamp(first("to")),
    )
    return [[obs.to_dict() for obs in observations], stats.to_dict()]


def make_handler(store):
    class ApiHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            parsed = urlparse(self.path)
            if parsed.path == "/api/metrics":
                self.serve_metrics(parse_qs(parsed.query))
            elif parsed.path == "/healthz":
                self.send_response(200)
                self.send_header("Content-type", "text/plain")
                self.end_headers()
                self.wfile.write(b"ok")
            else:
                self.send_response(404)
                self.end_headers()

        def serve_metrics(self, params):
            try:
                payload = metrics_payload(store, params)
            except StorageError as e:
                logger.error(f"Failed to read store for API request: {e}")
                self.send_response(503)
                self.end_headers()
                return
            content = json.dumps(payload).encode("utf-8")
            self.send_response(200)
            self.send_header("Content-type", "application/json")
            self.send_header("Content-Length", str(len(content)))
            self.end_headers()
            self.wfile.write(content)

        def log_message(self, format, *args):
            logger.debug(format % args)

    return ApiHandler


class ApiServer:
    def __init__(self, store, host: str = "127.0.0.1", port: int = 3000):
        self.server = ThreadingHTTPServer((host, port), make_handler(store))
        self.server.daemon_threads = True
        self.thread = None

    @property
    def address(self) -> Tuple[str, int]:
        return self.server.server_address[:2]

    def start(self):
        self.thread = threading.Thread(
            target=self.server.serve_forever, name="api", daemon=True
        )
        self.thread.start()
        host, port = self.address
        logger.info(f"API running on http://{host}:{port}/api/metrics")

    def stop(self):
        self.server.shutdown()
        self.server.server_close()
        if self.thread:
            self.thread.join()
