from typing import List, Optional
from urllib.parse import urlsplit

import yaml

from rpc_monitor.errors import ConfigError
from rpc_monitor.models import Endpoint
from rpc_monitor.poller import POLL_INTERVAL, SWEEP_INTERVAL
from rpc_monitor.store import DEFAULT_MAP_SIZE, DEFAULT_PATH, RETENTION_SECONDS

DEFAULT_LISTEN_IP = "127.0.0.1"
DEFAULT_PORT = 3000


# Config loader with normalization
def load_config(path):
    try:
        with open(path, "r") as f:
            raw_config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw_config, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    return normalize_config(raw_config)


def derive_label(address: str) -> str:
    """Host (and port) of an address; paths, queries and credentials are left out."""
    parts = urlsplit(address)
    try:
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Endpoint address has an invalid port: {e}") from e
    if not parts.hostname:
        raise ConfigError("Endpoint address has no host; give it an explicit label")
    return f"{parts.hostname}:{port}" if port else parts.hostname


def normalize_endpoint(entry) -> Endpoint:
    """
    Accept both endpoint spellings.

    Current format:
      - address: https://api.mainnet-beta.solana.com
        label: Solana Foundation

    Legacy format:
      - url: https://api.mainnet-beta.solana.com
        nickname: Solana Foundation

    A bare string, or an entry without a label, is labelled with the host
    of its address. Labels are published; addresses never are.
    """
    if isinstance(entry, str):
        address, label = entry, None
    elif isinstance(entry, dict):
        address = entry.get("address") or entry.get("url")
        label = entry.get("label") or entry.get("nickname")
    else:
        raise ConfigError(f"Invalid endpoint entry: {entry!r}")

    if not address:
        raise ConfigError(f"Endpoint entry has no address: {entry!r}")
    address = str(address).rstrip("/")
    return Endpoint(address=address, label=str(label) if label else derive_label(address))


def normalize_endpoints(entries) -> List[Endpoint]:
    if not isinstance(entries, list) or not entries:
        raise ConfigError("rpc.endpoints must be a non-empty list")

    endpoints = [normalize_endpoint(entry) for entry in entries]
    seen = set()
    for endpoint in endpoints:
        # Store keys are partitioned by label
        if endpoint.label in seen:
            raise ConfigError(f"Duplicate endpoint label: {endpoint.label}")
        seen.add(endpoint.label)
    return endpoints


def _section(config, name):
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def normalize_config(config):
    server = _section(config, "server")
    storage = _section(config, "storage")
    polling = _section(config, "polling")
    rpc = _section(config, "rpc")

    try:
        normalized = {
            "server": {
                "listen_ip": server.get("listen_ip", DEFAULT_LISTEN_IP),
                "port": int(server.get("port", DEFAULT_PORT)),
            },
            "metrics_port": config.get("metrics_port"),
            "log_format": config.get("log_format", "text"),
            "log_level": config.get("log_level", "INFO"),
            "storage": {
                "path": storage.get("path", DEFAULT_PATH),
                "map_size": int(storage.get("map_size", DEFAULT_MAP_SIZE)),
            },
            "polling": {
                "interval": float(polling.get("interval", POLL_INTERVAL)),
                "retention": float(polling.get("retention", RETENTION_SECONDS)),
                "sweep_interval": float(polling.get("sweep_interval", SWEEP_INTERVAL)),
            },
            "endpoints": normalize_endpoints(rpc.get("endpoints")),
        }
        if normalized["metrics_port"] is not None:
            normalized["metrics_port"] = int(normalized["metrics_port"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config value: {e}") from e

    return normalized


def apply_cli_overrides(
    config,
    listen_ip: Optional[str] = None,
    port: Optional[int] = None,
    metrics_port: Optional[int] = None,
):
    """CLI flags win over the file when given."""
    if listen_ip is not None:
        config["server"]["listen_ip"] = listen_ip
    if port is not None:
        config["server"]["port"] = port
    if metrics_port is not None:
        config["metrics_port"] = metrics_port
    return config
