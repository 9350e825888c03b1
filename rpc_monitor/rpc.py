"""JSON-RPC encoding/decoding and the HTTP transports used by the fetch tiers.

Three transports exist:

  * ``HttpxTransport``   pooled httpx client, HTTP/2 preferred
  * ``SessionTransport`` pooled requests session, HTTP/1.1 only
  * ``LegacyTransport``  bare ``requests.post``, one connection per call

Every transport returns a ``RawResponse`` whose ``elapsed_ms`` covers only the
network exchange: the body is serialized before the clock starts and parsed
after it stops. Bodies are streamed and abandoned once REQUEST_TIMEOUT
seconds have passed, however slowly the peer sends.
"""

import json
import logging
import time
from typing import Any, Iterable, List, NamedTuple, Optional, Tuple

import httpx
import requests
from requests.adapters import HTTPAdapter

from rpc_monitor.errors import DecodeError, ProtocolError, RpcError, TransportError

logger = logging.getLogger(__name__)

# Overall wall-clock budget for one exchange, also the cap on each read
REQUEST_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0
POOL_MAX_IDLE = 32
KEEPALIVE_EXPIRY = 90.0
# urllib3 blocks until a full chunk arrives, so read byte by byte
STREAM_CHUNK_SIZE = 1

JSON_HEADERS = {"Content-Type": "application/json"}
FINALIZED = {"commitment": "finalized"}


class RawResponse(NamedTuple):
    status_code: int
    content: bytes
    elapsed_ms: int


def encode_request(method: str, params: Optional[List[Any]] = None, request_id: int = 1) -> bytes:
    payload = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params:
        payload["params"] = params
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def check_status(response: RawResponse) -> None:
    if not 200 <= response.status_code < 300:
        detail = response.content[:200].decode("utf-8", errors="replace")
        raise ProtocolError(response.status_code, detail)


def decode_response(response: RawResponse) -> Any:
    """Return the ``result`` of a JSON-RPC envelope or raise the matching failure."""
    check_status(response)
    try:
        body = json.loads(response.content)
    except ValueError as e:
        raise DecodeError(f"Response is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise DecodeError(f"Unexpected response type: {type(body).__name__}")

    error = body.get("error")
    if error is not None:
        if isinstance(error, dict):
            raise RpcError(error.get("code"), str(error.get("message", "")))
        raise RpcError(None, str(error))

    if "result" not in body:
        raise DecodeError("Response envelope has no result")
    return body["result"]


def parse_slot(result: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(result, bool) or not isinstance(result, int) or result < 0:
        raise DecodeError(f"Unexpected slot value: {result!r}")
    return result


def parse_block_id(result: Any) -> str:
    try:
        blockhash = result["value"]["blockhash"]
    except (KeyError, TypeError) as e:
        raise DecodeError(f"Unexpected getLatestBlockhash result: {result!r}") from e
    if not isinstance(blockhash, str) or not blockhash:
        raise DecodeError(f"Unexpected blockhash value: {blockhash!r}")
    return blockhash


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _read_within(chunks: Iterable[bytes], deadline: float) -> bytes:
    """Collect a streamed body, abandoning it once ``deadline`` has passed.

    The wall clock is checked once the headers are in and after every
    chunk, so a peer that trickles bytes cannot hold the call open.
    """
    content = bytearray()
    _check_deadline(deadline)
    for chunk in chunks:
        _check_deadline(deadline)
        content.extend(chunk)
    return bytes(content)


def _check_deadline(deadline: float) -> None:
    if time.perf_counter() > deadline:
        raise TransportError("Exchange exceeded its overall deadline")


class HttpxTransport:
    """Pooled httpx client. Built with HTTP/2 enabled for the preferred tier."""

    name = "httpx"

    def __init__(self, client: httpx.Client, deadline: float = REQUEST_TIMEOUT):
        self.client = client
        self.deadline = deadline

    @classmethod
    def build(
        cls,
        http2: bool = True,
        max_idle: int = POOL_MAX_IDLE,
        deadline: float = REQUEST_TIMEOUT,
    ) -> "HttpxTransport":
        client = httpx.Client(
            http2=http2,
            timeout=httpx.Timeout(
                min(REQUEST_TIMEOUT, deadline), connect=min(CONNECT_TIMEOUT, deadline)
            ),
            limits=httpx.Limits(
                max_keepalive_connections=max_idle,
                keepalive_expiry=KEEPALIVE_EXPIRY,
            ),
            headers=JSON_HEADERS,
        )
        return cls(client, deadline)

    def post(self, url: str, body: bytes) -> RawResponse:
        start = time.perf_counter()
        try:
            with self.client.stream("POST", url, content=body, headers=JSON_HEADERS) as response:
                content = _read_within(response.iter_bytes(), start + self.deadline)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e
        elapsed = _elapsed_ms(start)
        logger.debug(f"{url} answered over {response.http_version}")
        return RawResponse(response.status_code, content, elapsed)

    def close(self) -> None:
        self.client.close()


def _post_streaming(post, url: str, body: bytes, deadline: float) -> RawResponse:
    """Shared body of the requests-based transports."""
    start = time.perf_counter()
    timeout = (min(CONNECT_TIMEOUT, deadline), min(REQUEST_TIMEOUT, deadline))
    try:
        with post(url, data=body, headers=JSON_HEADERS, timeout=timeout, stream=True) as response:
            chunks = response.iter_content(chunk_size=STREAM_CHUNK_SIZE)
            content = _read_within(chunks, start + deadline)
    except requests.RequestException as e:
        raise TransportError(f"{type(e).__name__}: {e}") from e
    return RawResponse(response.status_code, content, _elapsed_ms(start))


class SessionTransport:
    """Pooled requests session. requests never negotiates HTTP/2."""

    name = "requests-session"

    def __init__(self, session: requests.Session, deadline: float = REQUEST_TIMEOUT):
        self.session = session
        self.deadline = deadline

    @classmethod
    def build(cls, max_idle: int = POOL_MAX_IDLE, deadline: float = REQUEST_TIMEOUT) -> "SessionTransport":
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=max_idle, pool_maxsize=max_idle)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update(JSON_HEADERS)
        return cls(session, deadline)

    def post(self, url: str, body: bytes) -> RawResponse:
        return _post_streaming(self.session.post, url, body, self.deadline)

    def close(self) -> None:
        self.session.close()


class LegacyTransport:
    """Last-resort transport: a fresh connection for every call."""

    name = "requests"

    def __init__(self, deadline: float = REQUEST_TIMEOUT):
        self.deadline = deadline

    def post(self, url: str, body: bytes) -> RawResponse:
        return _post_streaming(requests.post, url, body, self.deadline)

    def close(self) -> None:
        pass


def call(transport, url: str, method: str, params: Optional[List[Any]] = None) -> Tuple[Any, int]:
    """Issue one JSON-RPC call and return ``(result, elapsed_ms)``."""
    body = encode_request(method, params)
    response = transport.post(url, body)
    return decode_response(response), response.elapsed_ms


def get_slot(transport, url: str) -> Tuple[int, int]:
    result, elapsed = call(transport, url, "getSlot", [FINALIZED])
    return parse_slot(result), elapsed


def get_block_id(transport, url: str) -> Tuple[str, int]:
    result, elapsed = call(transport, url, "getLatestBlockhash", [FINALIZED])
    return parse_block_id(result), elapsed
