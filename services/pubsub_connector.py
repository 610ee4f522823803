#!/usr/bin/env python3
"""
Pub/Sub connector for the LB Collector.

Provides helpers to build a subscriber client, resolve (create or attach to)
the collector subscription, and pull messages one at a time as
PulledMessage objects that carry their own acknowledgment action.

Credentials are discovered by the Google client library (Application
Default Credentials); nothing here handles them directly.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from google.api_core import exceptions as gapi_exceptions
from google.cloud import pubsub_v1

DEFAULT_ACK_DEADLINE_SECONDS = 60

# Errors that a single pull or ack can raise without the subscriber being broken
TRANSIENT_ERRORS = (gapi_exceptions.GoogleAPICallError, gapi_exceptions.RetryError)


def create_subscriber() -> pubsub_v1.SubscriberClient:
    """Build a subscriber client using Application Default Credentials."""
    return pubsub_v1.SubscriberClient()


def ensure_subscription(
    subscriber: pubsub_v1.SubscriberClient,
    *,
    project: str,
    topic: str,
    subscription: str,
    ack_deadline_seconds: int = DEFAULT_ACK_DEADLINE_SECONDS,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    Create the subscription, or attach to an existing one of the same name.

    Returns the fully-qualified subscription path. Raises if the subscription
    can neither be created nor resolved.
    """
    log = logger or logging.getLogger(__name__)
    topic_path = subscriber.topic_path(project, topic)
    subscription_path = subscriber.subscription_path(project, subscription)

    try:
        log.info(f"Creating subscription {subscription_path} on {topic_path}...")
        subscriber.create_subscription(
            request={
                "name": subscription_path,
                "topic": topic_path,
                "ack_deadline_seconds": ack_deadline_seconds,
            }
        )
        log.info(f"Created subscription {subscription_path}")
        return subscription_path
    except gapi_exceptions.AlreadyExists:
        log.info(f"Subscription {subscription_path} already exists, attaching")
    except gapi_exceptions.GoogleAPICallError as e:
        log.warning(f"Could not create subscription {subscription_path}: {e}. Attaching to existing.")

    subscriber.get_subscription(request={"subscription": subscription_path})
    return subscription_path


class PulledMessage:
    """A message pulled from the subscription, with its ack action."""

    def __init__(self, subscriber: pubsub_v1.SubscriberClient, subscription_path: str, received: Any):
        self._subscriber = subscriber
        self._subscription_path = subscription_path
        self.ack_id = received.ack_id
        self.message_id = received.message.message_id
        self.data = received.message.data
        self.publish_time = received.message.publish_time
        self.acked = False

    def age(self, now: Optional[datetime] = None) -> float:
        """Seconds elapsed between publish time and ``now``."""
        now = now or datetime.now(timezone.utc)
        return (now - self.publish_time).total_seconds()

    def ack(self) -> None:
        """Positively acknowledge this message. Subsequent calls are no-ops."""
        if self.acked:
            return
        self.acked = True
        self._subscriber.acknowledge(
            request={"subscription": self._subscription_path, "ack_ids": [self.ack_id]}
        )


@contextmanager
def acknowledging(
    message: PulledMessage,
    logger: Optional[logging.Logger] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
):
    """
    Scope the processing of one message.

    The message is acknowledged when the block exits, on every path. An ack
    failure is logged and reported to ``on_error``; it does not propagate.
    """
    log = logger or logging.getLogger(__name__)
    try:
        yield message
    finally:
        try:
            message.ack()
        except TRANSIENT_ERRORS as e:
            log.warning(f"Failed to ack message {message.message_id}: {e}")
            if on_error is not None:
                on_error(e)


def pull_messages(
    subscriber: pubsub_v1.SubscriberClient,
    subscription_path: str,
    stop_event: threading.Event,
    *,
    max_messages: int = 10,
    timeout: float = 10.0,
    error_pause: float = 1.0,
    logger: Optional[logging.Logger] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> Iterator[PulledMessage]:
    """
    Yield messages from the subscription until ``stop_event`` is set.

    Pull errors are logged and pulling resumes after ``error_pause`` seconds.
    A pull that times out with no messages is not an error. The generator
    returning is the stream's completion signal.
    """
    log = logger or logging.getLogger(__name__)

    while not stop_event.is_set():
        try:
            response = subscriber.pull(
                request={"subscription": subscription_path, "max_messages": max_messages},
                timeout=timeout,
            )
        except gapi_exceptions.DeadlineExceeded:
            continue
        except TRANSIENT_ERRORS as e:
            log.warning(f"Error pulling from {subscription_path}: {e}")
            if on_error is not None:
                on_error(e)
            stop_event.wait(error_pause)
            continue

        for received in response.received_messages:
            yield PulledMessage(subscriber, subscription_path, received)
