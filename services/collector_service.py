#!/usr/bin/env python3
"""
=====================================================================
LB Collector Service (v1.0)
=====================================================================
Turns load balancer access logs into StatsD request counters.

It is a long-running worker service that:
- Pulls log entries from the loadbalancer-logs topic (subscription lb-collector)
- Drops entries published more than a minute ago
- Decodes each entry and increments http.request tagged with
  status:<code> and hostname:<host>
- Acknowledges every message exactly once, whatever the outcome
- Serves a liveness probe on /services/ping

Key Features:
- Synchronous, one-at-a-time processing (no internal parallelism)
- Poison messages are logged and dropped, never redelivered
- Pull, decode and emission errors never stop the loop
- Buffered DogStatsD client with a bounded sender queue
- Prometheus self-metrics endpoint
- Correlation ID (Pub/Sub message id) on every log line
- Graceful shutdown on SIGTERM/SIGINT
- No global collector state: an explicit CollectorContext is passed around
=====================================================================
"""

import os
import sys
import uuid
import signal
import logging
import argparse
import threading
import time
from datetime import datetime
from typing import Iterable, List, Optional

from prometheus_client import start_http_server, Counter, Histogram

from services.health_server import start_health_server
from services.log_entry import HTTPRequest, LogEntryDecodeError, decode_log_entry, get_base_host
from services.logging_utils import CorrelationID, setup_json_logging
from services.pubsub_connector import (
    PulledMessage,
    acknowledging,
    create_subscriber,
    ensure_subscription,
    pull_messages,
)
from services.statsd_connector import close_statsd_client, create_statsd_client, parse_endpoint

SERVICE_NAME = "lb-collector"
SERVICE_VERSION = "1.0.0"

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_MESSAGES_TOTAL = Counter(
    'lbc_collector_messages_total',
    'Total messages handled by the collector',
    ['status']  # emitted, stale, decode_error, emit_error
)

METRIC_PULL_ERRORS_TOTAL = Counter(
    'lbc_collector_pull_errors_total',
    'Total failed pull requests against the subscription',
    ['reason']  # exception class name
)

METRIC_ACK_FAILURES_TOTAL = Counter(
    'lbc_collector_ack_failures_total',
    'Total failed message acknowledgments',
    ['reason']
)

METRIC_MESSAGE_AGE = Histogram(
    'lbc_collector_message_age_seconds',
    'Age of messages (now - publish time) when processed',
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0, 3600.0]
)

METRIC_PROCESSING_LATENCY = Histogram(
    'lbc_collector_processing_latency_seconds',
    'Time to process a single message, ack included',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# =====================================================================
# LOGGING
# =====================================================================

logger = logging.getLogger(__name__)

# =====================================================================
# CONSTANTS
# =====================================================================

MESSAGE_PREVIEW_LENGTH = 200

# Messages at least this old are acked without emitting
STALENESS_THRESHOLD_SECONDS = 60

DEFAULT_TOPIC = 'loadbalancer-logs'
DEFAULT_SUBSCRIPTION = 'lb-collector'
DEFAULT_METRIC_NAME = 'http.request'
ACK_DEADLINE_SECONDS = 60

# A blocked pull delays shutdown by up to this long
DEFAULT_PULL_TIMEOUT_SECONDS = 10

# =====================================================================
# CONFIGURATION
# =====================================================================

def build_arg_parser() -> argparse.ArgumentParser:
    """Command line flags. Defaults come from the environment."""
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Forward load balancer access logs from Pub/Sub to StatsD as request counters."
    )
    parser.add_argument('--statsd', default=os.environ.get('STATSD_ENDPOINT', 'localhost:8125'),
                        help="StatsD endpoint host:port (default: localhost:8125)")
    parser.add_argument('--project', default=os.environ.get('GCP_PROJECT', ''),
                        help="Google Cloud project ID (required)")
    parser.add_argument('--http', default=os.environ.get('HEALTH_ADDRESS', ':8080'),
                        help="host:port for health checks (default: :8080)")
    parser.add_argument('--buffer', default=os.environ.get('STATSD_BUFFER', '256'),
                        help="Amount of statsd messages to buffer (default: 256)")
    parser.add_argument('--metric-name', default=os.environ.get('METRIC_NAME', DEFAULT_METRIC_NAME),
                        help=f"Counter name to increment (default: {DEFAULT_METRIC_NAME})")
    parser.add_argument('--metrics-port', default=os.environ.get('METRICS_PORT_COLLECTOR', '8081'),
                        help="Prometheus self-metrics port, 0 to disable (default: 8081)")
    return parser


class Config:
    """Service configuration loaded from command line flags and environment variables."""

    def __init__(self, argv: Optional[List[str]] = None):
        args = build_arg_parser().parse_args(argv)
        try:
            # Service Identity
            self.POD_NAME = os.environ.get('POD_NAME', f"lb-collector-{uuid.uuid4().hex[:6]}")
            self.LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
            self.METRICS_PORT = int(args.metrics_port)

            # Pub/Sub Config
            self.PROJECT = args.project.strip()
            self.TOPIC_NAME = os.environ.get('PUBSUB_TOPIC', DEFAULT_TOPIC)
            self.SUBSCRIPTION_NAME = os.environ.get('PUBSUB_SUBSCRIPTION', DEFAULT_SUBSCRIPTION)
            self.ACK_DEADLINE_SECONDS = ACK_DEADLINE_SECONDS
            self.PULL_MAX_MESSAGES = int(os.environ.get('PULL_MAX_MESSAGES', 10))
            self.PULL_TIMEOUT_SECONDS = float(os.environ.get('PULL_TIMEOUT_SECONDS', DEFAULT_PULL_TIMEOUT_SECONDS))

            # StatsD Config
            self.STATSD_ENDPOINT = args.statsd
            self.STATSD_HOST, self.STATSD_PORT = parse_endpoint(self.STATSD_ENDPOINT, default_host='localhost')
            self.BUFFER_LENGTH = int(args.buffer)
            self.METRIC_NAME = args.metric_name.strip()

            # Health Check Config
            self.HEALTH_ADDRESS = args.http
            self.HEALTH_HOST, self.HEALTH_PORT = parse_endpoint(self.HEALTH_ADDRESS, default_host='0.0.0.0')

            self._validate()

        except Exception as e:
            logger.error(f"FATAL: Configuration error: {e}")
            sys.exit(1)

    def _validate(self):
        """Validate critical configuration values."""
        if not self.PROJECT:
            raise ValueError("Project must be specified!")
        if not self.METRIC_NAME:
            raise ValueError("METRIC_NAME must not be empty")
        if not self.TOPIC_NAME or not self.SUBSCRIPTION_NAME:
            raise ValueError("PUBSUB_TOPIC and PUBSUB_SUBSCRIPTION must not be empty")

        if self.BUFFER_LENGTH < 1:
            raise ValueError(f"buffer must be at least 1, got: {self.BUFFER_LENGTH}")

        if self.METRICS_PORT < 0 or self.METRICS_PORT > 65535:
            raise ValueError(f"METRICS_PORT invalid: {self.METRICS_PORT}")

        if self.PULL_MAX_MESSAGES < 1 or self.PULL_MAX_MESSAGES > 1000:
            raise ValueError(f"PULL_MAX_MESSAGES must be between 1-1000, got: {self.PULL_MAX_MESSAGES}")

        if self.PULL_TIMEOUT_SECONDS <= 0:
            raise ValueError(f"PULL_TIMEOUT_SECONDS must be positive, got: {self.PULL_TIMEOUT_SECONDS}")

        logging.getLogger().setLevel(self.LOG_LEVEL)
        logger.info(f"Configuration validated for worker: {self.POD_NAME}")

# =====================================================================
# COLLECTOR CONTEXT
# =====================================================================

class CollectorContext:
    """Everything the ingest loop and health listener share, fixed at startup."""

    def __init__(self, config: Config, statsd_client, stop_event: Optional[threading.Event] = None):
        self.config = config
        self.statsd_client = statsd_client
        self.stop_event = stop_event or threading.Event()

# =====================================================================
# CORE PROCESSING LOGIC
# =====================================================================

def build_tags(http_request: HTTPRequest) -> List[str]:
    return [
        f"status:{http_request.status}",
        f"hostname:{get_base_host(http_request.request_url)}",
    ]


def emit_metric(ctx: CollectorContext, http_request: HTTPRequest) -> None:
    """Increment the request counter for one decoded request."""
    tags = build_tags(http_request)
    logger.debug(f"emit status={http_request.status} url={http_request.request_url}")
    ctx.statsd_client.increment(ctx.config.METRIC_NAME, value=1, tags=tags)


def _count_ack_failure(error: Exception) -> None:
    METRIC_ACK_FAILURES_TOTAL.labels(reason=type(error).__name__).inc()


def _count_pull_error(error: Exception) -> None:
    METRIC_PULL_ERRORS_TOTAL.labels(reason=type(error).__name__).inc()


def process_message(ctx: CollectorContext, message: PulledMessage, now: Optional[datetime] = None) -> str:
    """
    Handle a single pulled message and acknowledge it.

    Returns the outcome: 'emitted', 'stale', 'decode_error' or 'emit_error'.
    Unexpected exceptions propagate, but only after the message was acked.
    """
    start_time = time.time()
    CorrelationID.set(message.message_id)
    try:
        with acknowledging(message, logger=logger, on_error=_count_ack_failure):
            age = message.age(now)
            METRIC_MESSAGE_AGE.observe(max(age, 0.0))

            if age >= STALENESS_THRESHOLD_SECONDS:
                logger.debug(f"Skipping stale message ({age:.1f}s old)")
                status = 'stale'
            else:
                status = _decode_and_emit(ctx, message)

        METRIC_MESSAGES_TOTAL.labels(status=status).inc()
        METRIC_PROCESSING_LATENCY.observe(time.time() - start_time)
        return status
    finally:
        CorrelationID.clear()


def _decode_and_emit(ctx: CollectorContext, message: PulledMessage) -> str:
    try:
        entry = decode_log_entry(message.data)
    except LogEntryDecodeError as e:
        preview = message.data[:MESSAGE_PREVIEW_LENGTH]
        logger.warning(f"error in decode: {e}. Dropping: {preview!r}")
        return 'decode_error'

    try:
        emit_metric(ctx, entry.http_request)
    except Exception as e:
        logger.warning(f"Error in metric emission: {e}")
        return 'emit_error'

    return 'emitted'


def listen(ctx: CollectorContext, messages: Iterable[PulledMessage]) -> int:
    """
    Run the ingest loop until the message stream completes.

    Returns the number of messages handled.
    """
    logger.info("Listening for subscribed messages...")
    handled = 0

    for message in messages:
        try:
            process_message(ctx, message)
        except Exception as e:
            # Already acked by process_message(); keep going
            logger.error(f"CRITICAL: Unhandled error processing message: {e}", exc_info=True)
        handled += 1

    logger.info(f"Message stream completed after {handled} messages")
    return handled

# =====================================================================
# GRACEFUL SHUTDOWN
# =====================================================================

def setup_signal_handlers(ctx: CollectorContext) -> None:
    def graceful_shutdown(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")
        ctx.stop_event.set()

    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)


def _fatal(message: str, error: Exception) -> None:
    logger.error(f"FATAL: {message}: {error}", exc_info=True)
    sys.exit(1)

# =====================================================================
# MAIN SERVICE LOOP
# =====================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main service entry point."""

    # --- 1. Load Config and Clients ---
    setup_json_logging(service_name=SERVICE_NAME, version=SERVICE_VERSION)
    config = Config(argv)

    try:
        statsd_client = create_statsd_client(
            host=config.STATSD_HOST,
            port=config.STATSD_PORT,
            buffer_length=config.BUFFER_LENGTH,
            logger=logger,
        )
    except Exception as e:
        _fatal("Couldn't create StatsD client", e)

    ctx = CollectorContext(config, statsd_client)

    # --- 2. Start Background Services ---
    if config.METRICS_PORT:
        try:
            start_http_server(config.METRICS_PORT)
        except OSError as e:
            _fatal(f"Prometheus metrics server failed on port {config.METRICS_PORT}", e)
        logger.info(f"Prometheus metrics server started on port {config.METRICS_PORT}")

    try:
        start_health_server(ctx)
    except OSError as e:
        _fatal("Healthcheck listener failed!", e)

    # --- 3. Resolve Subscription ---
    try:
        subscriber = create_subscriber()
        subscription_path = ensure_subscription(
            subscriber,
            project=config.PROJECT,
            topic=config.TOPIC_NAME,
            subscription=config.SUBSCRIPTION_NAME,
            ack_deadline_seconds=config.ACK_DEADLINE_SECONDS,
            logger=logger,
        )
    except Exception as e:
        _fatal("Error in Listen", e)

    setup_signal_handlers(ctx)

    # --- 4. Main Processing Loop ---
    logger.info("=" * 70)
    logger.info(f"LB Collector v{SERVICE_VERSION} - Pod: {config.POD_NAME}")
    logger.info("=" * 70)

    messages = pull_messages(
        subscriber,
        subscription_path,
        ctx.stop_event,
        max_messages=config.PULL_MAX_MESSAGES,
        timeout=config.PULL_TIMEOUT_SECONDS,
        logger=logger,
        on_error=_count_pull_error,
    )
    try:
        listen(ctx, messages)
    finally:
        close_statsd_client(statsd_client, logger=logger)
        subscriber.close()
        logger.info("Shutdown complete. Exiting.")

    return 0

# =====================================================================
# SERVICE ENTRY POINT
# =====================================================================

if __name__ == "__main__":
    sys.exit(main())
