#!/usr/bin/env python3
"""
Prometheus exporter for the Starlink user terminal ("Dishy").

Connects to the dish gRPC endpoint once, labels metrics with the dish
identity, then polls info/status/history on a fixed interval and exposes
the results in Prometheus format on an HTTP endpoint.
"""
import argparse
import logging
import math
import os
import re
import signal
import socket
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Mapping, TypedDict

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from starlink_exporter import __version__
from starlink_exporter.dishy import DEFAULT_ADDRESS, DishyClient, DishyConnectionError, DishyRequestError
from starlink_exporter.metrics import DishyMetrics
from starlink_exporter.poller import ExporterContext, run_cycle

# ======================
# Constants
# ======================

DEFAULT_INTERVAL = "30s"
DEFAULT_LISTEN_ADDRESS = "0.0.0.0:9817"
DEFAULT_LOG_LEVEL = "info"
# How often the main thread re-checks the shutdown flag (seconds)
SHUTDOWN_POLL_INTERVAL = 0.5

# ======================
# Logging Setup
# ======================

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

logger = logging.getLogger(__name__)


def log_level_from_name(name: str | None) -> int:
    """Map a level name to a logging level; unknown names fall back to INFO."""
    return LOG_LEVELS.get((name or "").strip().lower(), logging.INFO)


def configure_logging(level_name: str | None) -> None:
    logging.basicConfig(
        level=log_level_from_name(level_name),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

# ======================
# Configuration
# ======================

class ExporterConfig(TypedDict):
    dishy_address: str
    interval: float
    listen_host: str
    listen_port: int
    log_level: str


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """
    Parse a duration string such as "30s", "1m30s", "500ms" or "1.5h" into seconds.
    A bare number is taken as seconds.

    Raises:
        ValueError: If the string is not a valid duration
    """
    s = (value or "").strip()
    if not s:
        raise ValueError("empty duration")
    try:
        return float(s)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(s):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(s):
        raise ValueError(f"invalid duration {value!r}")
    return total


def parse_listen_address(value: str) -> tuple[str, int]:
    """Split "host:port" (host optional) into (host, port)."""
    host, sep, port = (value or "").strip().rpartition(":")
    if not sep:
        raise ValueError(f"invalid listen address {value!r}, expected host:port")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"invalid port in listen address {value!r}") from None
    if not (1 <= port_num <= 65535):
        raise ValueError(f"listen port must be between 1 and 65535, got {port_num}")
    return host.strip("[]") or "0.0.0.0", port_num


def build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="starlink-exporter",
        description="Prometheus exporter for the Starlink dish.",
    )
    parser.add_argument("--dishy-address", default=environ.get("DISHY_ADDRESS", DEFAULT_ADDRESS),
                        help="host:port of the Dishy gRPC endpoint (env DISHY_ADDRESS)")
    parser.add_argument("--interval", default=environ.get("UPDATE_INTERVAL", DEFAULT_INTERVAL),
                        help="Update interval, e.g. 30s or 1m (env UPDATE_INTERVAL)")
    parser.add_argument("--listen-address", default=environ.get("EXPORTER_ADDRESS", DEFAULT_LISTEN_ADDRESS),
                        help="host:port to serve /metrics on (env EXPORTER_ADDRESS)")
    parser.add_argument("--log-level", default=environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL),
                        help="error, warn, info, debug or trace (env LOG_LEVEL)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_config(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> ExporterConfig:
    """
    Build the exporter configuration from flags, then environment, then defaults.

    Raises:
        SystemExit: If any value is invalid
    """
    args = build_parser(os.environ if environ is None else environ).parse_args(argv)
    errors: list[str] = []

    interval = 0.0
    try:
        interval = parse_duration(args.interval)
    except ValueError as e:
        errors.append(f"--interval: {e}")
    else:
        if not math.isfinite(interval) or interval <= 0:
            errors.append(f"--interval must be > 0, got {args.interval!r}")

    listen_host, listen_port = "", 0
    try:
        listen_host, listen_port = parse_listen_address(args.listen_address)
    except ValueError as e:
        errors.append(f"--listen-address: {e}")

    if not args.dishy_address.strip():
        errors.append("--dishy-address must not be empty")

    if errors:
        raise SystemExit("Configuration errors:\n  " + "\n  ".join(errors))

    return ExporterConfig(
        dishy_address=args.dishy_address.strip(),
        interval=interval,
        listen_host=listen_host,
        listen_port=listen_port,
        log_level=args.log_level,
    )

# ======================
# HTTP Handler
# ======================

class MetricsHandler(BaseHTTPRequestHandler):
    server: "MetricsServer"

    def do_GET(self):
        if self.path.split("?", 1)[0] == "/metrics":
            self.handle_metrics()
        else:
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b"Not Found\n")

    def log_message(self, fmt, *args):
        return

    def handle_metrics(self):
        body = generate_latest(self.server.registry)
        self.send_response(200)
        self.send_header("Content-Type", CONTENT_TYPE_LATEST)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class MetricsServer(ThreadingHTTPServer):
    """HTTP server exposing one registry; each scrape runs in its own thread."""
    daemon_threads = True

    def __init__(self, address: tuple[str, int], registry: CollectorRegistry, bind_and_activate: bool = True):
        self.registry = registry
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(address, MetricsHandler, bind_and_activate)

# ======================
# Poll loop
# ======================

def poll_loop(ctx: ExporterContext, interval: float, shutdown: threading.Event) -> None:
    """
    Run one cycle immediately, then one every ``interval`` seconds until shutdown.

    The next cycle is only scheduled once the previous one has finished, so
    cycles never overlap. A cycle in flight when shutdown is requested runs to
    completion.
    """
    logger.info(f"Poll loop started, updating every {interval}s")
    while True:
        started = time.monotonic()
        try:
            run_cycle(ctx)
        except Exception:
            logger.exception("Update cycle failed")
        remaining = max(0.0, interval - (time.monotonic() - started))
        if shutdown.wait(remaining):
            break
    logger.info("Poll loop stopped (shutdown requested)")

# ======================
# Signal Handlers
# ======================

def install_signal_handlers(shutdown: threading.Event) -> None:
    def signal_handler(signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        shutdown.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

# ======================
# Main
# ======================

def connect(address: str) -> tuple[DishyClient, dict[str, str]]:
    """
    Connect to the dish and fetch its identity once.

    Raises:
        SystemExit: If the dish is unreachable or does not answer the info request
    """
    try:
        client = DishyClient.connect(address)
    except DishyConnectionError as e:
        logger.critical(f"Failed to connect to Dishy: {e}")
        raise SystemExit(1) from e

    try:
        info = client.get_device_info()
    except DishyRequestError as e:
        client.close()
        logger.critical(f"Failed to fetch Dishy device info: {e}")
        raise SystemExit(1) from e

    identity = info.identity
    logger.info(
        f"Connected to Dishy {identity.id} at {address} "
        f"(hardware={identity.hardware_version}, software={identity.software_version}, "
        f"manufactured={identity.manufactured_version}, country={identity.country_code})"
    )
    return client, identity.labels()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the exporter."""
    config = load_config(argv)
    configure_logging(config["log_level"])

    shutdown = threading.Event()
    install_signal_handlers(shutdown)

    client, labels = connect(config["dishy_address"])
    if shutdown.is_set():
        logger.info("Shutdown requested during startup, exiting before serving")
        client.close()
        return 0
    ctx =ExporterContext(client=client, metrics=DishyMetrics(), identity_labels=labels)

    try:
        server = MetricsServer((config["listen_host"], config["listen_port"]), ctx.metrics.registry)
    except OSError as e:
        client.close()
        logger.critical(f"Failed to listen on {config['listen_host']}:{config['listen_port']}: {e}")
        raise SystemExit(1) from e

    server_thread = threading.Thread(target=server.serve_forever, name="http-server", daemon=True)
    server_thread.start()
    logger.info(
        f"Starlink exporter v{__version__} listening on {config['listen_host']}:{config['listen_port']}, "
        f"polling {config['dishy_address']} every {config['interval']}s"
    )

    # Non-daemon so the in-flight cycle is allowed to finish
    poller_thread = threading.Thread(target=poll_loop, args=(ctx, config["interval"], shutdown), name="poller")
    poller_thread.start()

    try:
        while not shutdown.wait(SHUTDOWN_POLL_INTERVAL):
            pass
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        shutdown.set()
    finally:
        logger.info("Waiting for in-flight update cycle to finish...")
        poller_thread.join()
        logger.info("Shutting down HTTP server...")
        server.shutdown()
        server.server_close()
        client.close()
        logger.info("Exporter shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
