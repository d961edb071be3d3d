from __future__ import annotations

import logging
import signal
from socketserver import ThreadingMixIn
from threading import Thread
from typing import Any, Callable, Iterable, List, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

logger = logging.getLogger(__name__)

StartResponse = Callable[[str, List[Tuple[str, str]]], Any]


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def setup_logging(level: str) -> None:
    name = level.upper()
    if name == "WARN":
        name = "WARNING"
    lvl = getattr(logging, name, logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def make_app(registry: CollectorRegistry, telemetry_path: str = "/metrics"):
    def app(environ, start_response: StartResponse) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path or path == "/":
            try:
                output = generate_latest(registry)
            except Exception:
                logger.exception("metrics exposition failed")
                start_response("500 Internal Server Error", [("Content-Type", "text/plain")])
                return [b"metrics exposition failed"]
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path == "/health":
            start_response("200 OK", [("Content-Type", "application/json")])
            return [b'{"status":"ok"}']
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def serve(registry: CollectorRegistry, host: str, port: int, telemetry_path: str) -> None:
    app = make_app(registry, telemetry_path)
    httpd = make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _sig(signum, _frame):
        logger.info("received signal=%s shutting down", signum)
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logger.info(
        "listening=%s:%s telemetry_path=%s health_path=/health",
        host if host else "0.0.0.0",
        port,
        telemetry_path,
    )

    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
        logger.info("http server stopped")
