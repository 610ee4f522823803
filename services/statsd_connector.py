#!/usr/bin/env python3
"""
StatsD connector for the LB Collector.

Builds and drains a buffered DogStatsD client. Increments are queued for a
background sender; the queue holds at most ``buffer_length`` packets and
what happens when it is full is up to the datadog client.
"""

import logging
from typing import Optional, Tuple

from datadog.dogstatsd import DogStatsd


def parse_endpoint(endpoint: str, default_host: str = "") -> Tuple[str, int]:
    """
    Split a ``host:port`` string.

    An empty host (``:8080``) is replaced by ``default_host``. Raises
    ValueError when the port is missing or out of range.
    """
    host, sep, port_str = endpoint.rpartition(":")
    if not sep:
        raise ValueError(f"endpoint must be host:port, got: {endpoint!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in endpoint {endpoint!r}") from None
    if port < 1 or port > 65535:
        raise ValueError(f"port must be between 1-65535 in endpoint {endpoint!r}")
    # [::1]:8125
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host or default_host, port


def create_statsd_client(
    *,
    host: str,
    port: int,
    buffer_length: int,
    logger: Optional[logging.Logger] = None,
) -> DogStatsd:
    log = logger or logging.getLogger(__name__)
    log.info(f"Creating StatsD client for {host}:{port} (buffer={buffer_length})")
    return DogStatsd(
        host=host,
        port=port,
        disable_buffering=False,
        disable_background_sender=False,
        sender_queue_size=buffer_length,
    )


def close_statsd_client(client: DogStatsd, logger: Optional[logging.Logger] = None) -> None:
    """
    Flush the buffer and block until the background sender has written
    every queued packet.

    ``flush()`` alone only hands the buffer to the sender queue, and the
    sender is a daemon thread that dies with the interpreter.
    """
    log = logger or logging.getLogger(__name__)
    log.info("Draining StatsD sender queue...")
    client.wait_for_pending()
