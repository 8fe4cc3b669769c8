"""Health check and metrics endpoint for the operator."""

from __future__ import annotations

import threading
from typing import Any

from prometheus_client import make_wsgi_app
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response


def create_combined_wsgi_app() -> Any:
    """Create a WSGI app that combines metrics and health check endpoints.

    Returns:
        Combined WSGI application
    """
    metrics_app = make_wsgi_app()

    def combined_app(environ: dict[str, Any], start_response: Any) -> list[bytes]:
        """WSGI app that routes /healthz and /readyz, delegates /metrics to prometheus."""
        request = Request(environ)

        if request.path == "/healthz":
            response = Response('{"status":"ok"}', mimetype="application/json", status=200)
            return response(environ, start_response)
        if request.path == "/readyz":
            response = Response('{"status":"ready"}', mimetype="application/json", status=200)
            return response(environ, start_response)
        if request.path == "/metrics":
            return metrics_app(environ, start_response)

        response = Response('{"error":"not found"}', mimetype="application/json", status=404)
        return response(environ, start_response)

    return combined_app


def start_metrics_server(port: int) -> threading.Thread:
    """Serve /metrics, /healthz and /readyz from a daemon thread.

    Args:
        port: Port to listen on

    Returns:
        The server thread
    """
    server = make_server("", port, create_combined_wsgi_app(), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread
