#!/usr/bin/env python3
"""
LB Collector - Load Balancer Log Entry Decoding

Decodes the JSON log entries published by the HTTP(S) load balancer logging
sink into LogEntry / HTTPRequest objects, and derives the hostname used to
tag request counters.

Only ``httpRequest.requestUrl`` and ``httpRequest.status`` are consumed by the
collector. The remaining fields are kept so that the decoded shape matches
what upstream publishers send.
"""

import json
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

UNKNOWN_HOSTNAME = "unknown"


class LogEntryDecodeError(ValueError):
    """Raised when a message payload is not a valid load balancer log entry."""


def _get_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise LogEntryDecodeError(f"field '{key}' must be a string, got {type(value).__name__}")
    return value


def _get_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    # bool is an int subclass; a JSON true/false is not a status code
    if isinstance(value, bool) or not isinstance(value, int):
        raise LogEntryDecodeError(f"field '{key}' must be an integer, got {type(value).__name__}")
    return value


class HTTPRequest:
    """The httpRequest block of a load balancer log entry."""

    def __init__(
        self,
        request_method: str = "",
        request_url: str = "",
        request_size: str = "",
        status: int = 0,
        response_size: str = "",
        remote_ip: str = "",
        server_ip: str = "",
    ):
        self.request_method = request_method
        self.request_url = request_url
        self.request_size = request_size
        self.status = status
        self.response_size = response_size
        self.remote_ip = remote_ip
        self.server_ip = server_ip

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HTTPRequest":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise LogEntryDecodeError(f"'httpRequest' must be an object, got {type(data).__name__}")
        return cls(
            request_method=_get_str(data, "requestMethod"),
            request_url=_get_str(data, "requestUrl"),
            request_size=_get_str(data, "requestSize"),
            status=_get_int(data, "status"),
            response_size=_get_str(data, "responseSize"),
            remote_ip=_get_str(data, "remoteIp"),
            server_ip=_get_str(data, "serverIp"),
        )

    def __repr__(self):
        return f"HTTPRequest(status={self.status!r}, request_url={self.request_url!r})"


class LogEntry:
    """A decoded load balancer log entry."""

    def __init__(
        self,
        metadata: Any = None,
        insert_id: str = "",
        log: str = "",
        struct_payload: Any = None,
        http_request: Optional[HTTPRequest] = None,
    ):
        self.metadata = metadata
        self.insert_id = insert_id
        self.log = log
        self.struct_payload = struct_payload
        self.http_request = http_request if http_request is not None else HTTPRequest()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        if not isinstance(data, dict):
            raise LogEntryDecodeError(f"log entry must be a JSON object, got {type(data).__name__}")
        return cls(
            metadata=data.get("metadata"),
            insert_id=_get_str(data, "insertId"),
            log=_get_str(data, "log"),
            struct_payload=data.get("structPayload"),
            http_request=HTTPRequest.from_dict(data.get("httpRequest")),
        )


def decode_log_entry(payload: bytes) -> LogEntry:
    """
    Decode a raw Pub/Sub payload into a LogEntry.

    Raises:
        LogEntryDecodeError: payload is not UTF-8 JSON, nests too deeply to
            parse, or does not have the log entry shape.
    """
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise LogEntryDecodeError(f"invalid JSON payload: {e}") from e
    return LogEntry.from_dict(data)


def get_base_host(request_url: str) -> str:
    """
    Return the host component of a request URL, or 'unknown'.

    The host keeps an explicit port (``example.com:8080``) but drops any
    user info. URLs that cannot be parsed, or have no host at all, map to
    'unknown'.
    """
    try:
        parts = urlsplit(request_url)
        # Accessing .port validates the port component
        parts.port
    except (ValueError, TypeError):
        return UNKNOWN_HOSTNAME

    host = parts.netloc.rpartition("@")[2]
    if not host:
        return UNKNOWN_HOSTNAME
    return host
