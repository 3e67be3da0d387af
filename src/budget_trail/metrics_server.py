"""
Prometheus metrics server for Budget Trail.

Starts an HTTP server that exposes ledger, lifecycle and anchor metrics
at /metrics.

Usage:
    python -m budget_trail.metrics_server --port 9090
"""

import argparse
import time

from budget_trail.kernel.logging import configure_logging, get_logger
from budget_trail.kernel.metrics import start_metrics_server

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Budget Trail Metrics Server")
    parser.add_argument(
        "--port",
        type=int,
        default=9090,
        help="Port to listen on (default: 9090)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (default: False)",
    )
    return parser


def main() -> None:
    """Start the Prometheus metrics server and block until interrupted"""
    args = build_parser().parse_args()

    configure_logging(json_output=args.json_logs, log_level=args.log_level)

    logger.info(
        "Starting Prometheus metrics server",
        port=args.port,
        endpoint=f"http://0.0.0.0:{args.port}/metrics",
    )

    start_metrics_server(port=args.port)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down metrics server")


if __name__ == "__main__":
    main()
