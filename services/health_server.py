#!/usr/bin/env python3
"""
Liveness endpoint for the LB Collector.

GET /services/ping answers 200 "PONG\\n" for as long as the process is up.
It says nothing about ingest health; orchestration only uses it to decide
whether to restart the pod.
"""

import logging
import socket
import threading
from typing import Tuple

from flask import Flask, Response
from werkzeug.serving import BaseWSGIServer, make_server

logger = logging.getLogger(__name__)

PING_PATH = '/services/ping'
PING_BODY = 'PONG\n'


def create_health_app() -> Flask:
    app = Flask('lb_collector_health')

    @app.route(PING_PATH, methods=['GET'])
    def ping():
        return Response(PING_BODY, status=200, mimetype='text/plain')

    return app


def _bind(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


def start_health_server(ctx) -> Tuple[BaseWSGIServer, threading.Thread]:
    """
    Bind the health listener and serve it from a daemon thread.

    The socket is bound on the calling thread, so an unusable address raises
    OSError before the ingest loop starts.
    """
    config = ctx.config
    # Per-probe access lines are noise at INFO
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    sock = _bind(config.HEALTH_HOST, config.HEALTH_PORT)
    try:
        # werkzeug dups the descriptor when handed an fd
        server = make_server(
            config.HEALTH_HOST,
            config.HEALTH_PORT,
            create_health_app(),
            threaded=True,
            fd=sock.fileno(),
        )
    finally:
        sock.close()

    thread = threading.Thread(target=server.serve_forever, daemon=True, name="HealthCheckServer")
    thread.start()
    host, port = server.server_address[:2]
    logger.info(f"HealthCheck listening on {host}:{port}{PING_PATH}")
    return server, thread
