import json
import time

from rpc_monitor.models import Observation
from rpc_monitor.rpc import RawResponse


def make_observation(label="alpha", slot=100, block_id="H1", latency_ms=20, captured_at=None, address=None):
    return Observation(
        captured_at=time.time() if captured_at is None else captured_at,
        slot=slot,
        block_id=block_id,
        latency_ms=latency_ms,
        endpoint_label=label,
        address=address if address is not None else f"https://{label}.example.org",
    )


def rpc_result(result, elapsed_ms=5, status_code=200):
    body = json.dumps({"jsonrpc": "2.0", "id": 1, "result": result}).encode()
    return RawResponse(status_code, body, elapsed_ms)


def blockhash_result(blockhash):
    return {"context": {"slot": 1}, "value": {"blockhash": blockhash, "lastValidBlockHeight": 1}}


class FakeTransport:
    """Answers JSON-RPC posts from a ``{method: response-or-exception}`` table."""

    def __init__(self, name="fake", responses=None):
        self.name = name
        self.responses = dict(responses or {})
        self.bodies = []
        self.closed = False

    def post(self, url, body):
        self.bodies.append(body)
        method = json.loads(body)["method"]
        response = self.responses[method]
        if isinstance(response, Exception):
            raise response
        return response

    def methods(self):
        return [json.loads(body)["method"] for body in self.bodies]

    def close(self):
        self.closed = True
