# =====================================================================
# LB Collector Pytest Configuration and Fixtures
# =====================================================================
# This file contains shared fixtures and configuration for all tests
# =====================================================================

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

import pytest


# --- Mock Configuration ---

@pytest.fixture
def mock_config():
    """Mock configuration object for the collector"""
    config = Mock()

    config.POD_NAME = "test-collector-01"
    config.LOG_LEVEL = "INFO"
    config.METRICS_PORT = 0

    # Pub/Sub config
    config.PROJECT = "test-project"
    config.TOPIC_NAME = "loadbalancer-logs"
    config.SUBSCRIPTION_NAME = "lb-collector"
    config.ACK_DEADLINE_SECONDS = 60
    config.PULL_MAX_MESSAGES = 10
    config.PULL_TIMEOUT_SECONDS = 30

    # StatsD config
    config.STATSD_ENDPOINT = "localhost:8125"
    config.STATSD_HOST = "localhost"
    config.STATSD_PORT = 8125
    config.BUFFER_LENGTH = 256
    config.METRIC_NAME = "http.request"

    # Health check config
    config.HEALTH_ADDRESS = "127.0.0.1:0"
    config.HEALTH_HOST = "127.0.0.1"
    config.HEALTH_PORT = 0

    return config


@pytest.fixture
def mock_statsd_client():
    """Mock DogStatsd client"""
    client = MagicMock()
    client.increment.return_value = None
    return client


@pytest.fixture
def mock_subscriber():
    """Mock Pub/Sub SubscriberClient"""
    subscriber = MagicMock()
    subscriber.topic_path.side_effect = lambda project, topic: f"projects/{project}/topics/{topic}"
    subscriber.subscription_path.side_effect = (
        lambda project, sub: f"projects/{project}/subscriptions/{sub}"
    )
    subscriber.acknowledge.return_value = None
    return subscriber


@pytest.fixture
def collector_ctx(mock_config, mock_statsd_client):
    """CollectorContext wired to mocks"""
    from services.collector_service import CollectorContext
    return CollectorContext(mock_config, mock_statsd_client)


# --- Message Factories ---

def make_received_message(data, publish_time=None, message_id="msg-1", ack_id="ack-1"):
    """Build an object shaped like a Pub/Sub ReceivedMessage"""
    if isinstance(data, (dict, list)):
        data = json.dumps(data).encode("utf-8")
    elif isinstance(data, str):
        data = data.encode("utf-8")
    if publish_time is None:
        publish_time = datetime.now(timezone.utc) - timedelta(seconds=1)
    return SimpleNamespace(
        ack_id=ack_id,
        message=SimpleNamespace(message_id=message_id, data=data, publish_time=publish_time),
    )


@pytest.fixture
def make_message(mock_subscriber):
    """Factory for PulledMessage objects acked through mock_subscriber"""
    from services.pubsub_connector import PulledMessage

    def _make(data, age_seconds=1.0, message_id="msg-1", ack_id="ack-1"):
        publish_time = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        received = make_received_message(data, publish_time, message_id=message_id, ack_id=ack_id)
        return PulledMessage(mock_subscriber, "projects/test-project/subscriptions/lb-collector", received)

    return _make


# --- Sample Data Fixtures ---

@pytest.fixture
def sample_log_entry():
    """Sample load balancer log entry"""
    return {
        "insertId": "1x2y3z",
        "log": "requests",
        "metadata": {"severity": "INFO", "projectId": "test-project"},
        "structPayload": {"statusDetails": "response_sent_by_backend"},
        "httpRequest": {
            "requestMethod": "GET",
            "requestUrl": "http://example.com/path?q=1",
            "requestSize": "123",
            "status": 200,
            "responseSize": "4567",
            "remoteIp": "203.0.113.10",
            "serverIp": "10.0.0.2",
        },
    }


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (bind local sockets)"
    )
    config.addinivalue_line(
        "markers", "smoke: Smoke tests against a running collector"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.message:
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
