import argparse
import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from prometheus_client import start_http_server

from rpc_monitor.api import ApiServer
from rpc_monitor.config import apply_cli_overrides, load_config
from rpc_monitor.errors import ConfigError, StorageError
from rpc_monitor.fetcher import FetchClient, ProtocolStats
from rpc_monitor.logs import LOG_FORMAT, setup_logging
from rpc_monitor.poller import Poller, RetentionSweeper
from rpc_monitor.store import ObservationStore

logger = logging.getLogger(__name__)


class Monitor:
    """Owns every long-lived resource and the shared stop signal."""

    def __init__(self, config: dict, fetcher=None, store=None):
        self.config = config
        self.endpoints = config["endpoints"]
        self.stop_event = threading.Event()
        self.stats = ProtocolStats()

        # Two concurrent RPC calls per endpoint per tier attempt
        self.rpc_executor = ThreadPoolExecutor(
            max_workers=max(2, 2 * len(self.endpoints)), thread_name_prefix="rpc"
        )
        self.fetcher = fetcher or FetchClient.build(self.rpc_executor, stats=self.stats)

        storage = config["storage"]
        polling = config["polling"]
        self.store = store or ObservationStore(
            storage["path"],
            map_size=storage["map_size"],
            retention=polling["retention"],
        )
        self.poller = Poller(
            self.endpoints,
            self.fetcher,
            self.store,
            interval=polling["interval"],
            stop_event=self.stop_event,
        )
        self.sweeper = RetentionSweeper(
            self.store,
            interval=polling["sweep_interval"],
            stop_event=self.stop_event,
        )
        server = config["server"]
        self.api = ApiServer(self.store, server["listen_ip"], server["port"])

    def start(self):
        self.poller.start()
        self.sweeper.start()
        self.api.start()
        logger.info(f"Monitoring {len(self.endpoints)} endpoints")

    def stop(self):
        self.stop_event.set()
        self.api.stop()
        self.poller.stop()
        self.sweeper.stop()
        self.rpc_executor.shutdown(wait=True)
        self.fetcher.close()
        self.store.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Blockchain RPC performance monitor")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--listen-ip")
    parser.add_argument("--port", type=int)
    parser.add_argument("--metrics-port", type=int)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        # No-op when handlers are already installed
        logging.basicConfig(format=LOG_FORMAT)
        logger.error(f"Failed to load config: {e}")
        return 1
    apply_cli_overrides(config, args.listen_ip, args.port, args.metrics_port)
    setup_logging(config["log_format"], config["log_level"])
    logger.info(f"Loaded config with {len(config['endpoints'])} endpoints")

    try:
        if config["metrics_port"]:
            start_http_server(config["metrics_port"])
            logger.info(f"Prometheus metrics on :{config['metrics_port']}/metrics")
        monitor = Monitor(config)
    except (StorageError, OSError) as e:
        logger.error(f"Failed to start monitor: {e}")
        return 1

    try:
        monitor.start()
        # Keep main thread alive
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        monitor.stop()
        logger.info("Monitor stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
