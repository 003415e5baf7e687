# SPDX-License-Identifier: MIT
"""Liveness and readiness endpoints for the controller process.

Readiness is computed on every request from registered checks (for example
"the cache finished its initial list"), so it never reports a stale answer.
"""
from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, Optional

from core.utils.logging import get_logger

logger = get_logger(__name__)

ReadinessCheck = Callable[[], bool]


class _HealthState:
    def __init__(self) -> None:
        self.live = True
        self.checks: Dict[str, ReadinessCheck] = {}
        self._lock = threading.Lock()

    def set_live(self, live: bool) -> None:
        with self._lock:
            self.live = live

    def add_check(self, name: str, check: ReadinessCheck) -> None:
        with self._lock:
            self.checks[name] = check

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            live = self.live
            checks = dict(self.checks)
        components: Dict[str, Dict[str, object]] = {}
        for name, check in checks.items():
            try:
                components[name] = {"healthy": bool(check())}
            except Exception as exc:  # a broken check must not take the endpoint down
                components[name] = {"healthy": False, "message": str(exc)}
        ready = live and all(component["healthy"] for component in components.values())
        return {"live": live, "ready": ready, "components": components}


class HealthServer:
    """Threaded HTTP server exposing ``/healthz``, ``/health/live`` and ``/readyz``."""

    def __init__(self, host: str = "0.0.0.0", port: int = 8085) -> None:
        self._state = _HealthState()
        self._server = ThreadingHTTPServer((host, port), self._handler_factory(self._state))
        self._thread = threading.Thread(target=self._server.serve_forever, name="health-server", daemon=True)
        self._started = threading.Event()

    @staticmethod
    def _handler_factory(state: _HealthState):
        class Handler(BaseHTTPRequestHandler):
            def _write(self, status: int, payload: Dict[str, object]) -> None:
                body = json.dumps(payload).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self) -> None:  # noqa: N802 - interface defined by BaseHTTPRequestHandler
                path = self.path.split("?", 1)[0]
                snapshot = state.snapshot()
                if path in ("/healthz", "/health/live"):
                    live = bool(snapshot["live"])
                    self._write(200 if live else 503, {"status": "ok" if live else "down", **snapshot})
                    return
                if path == "/readyz":
                    ready = bool(snapshot["ready"])
                    self._write(200 if ready else 503, {"status": "ready" if ready else "not-ready", **snapshot})
                    return
                self._write(404, {"status": "unknown"})

            def log_message(self, *args, **kwargs):  # type: ignore[override]
                return

        return Handler

    @property
    def port(self) -> int:
        _, port = self._server.server_address[:2]
        return int(port)

    def start(self) -> None:
        if self._started.is_set():
            return
        self._thread.start()
        self._started.set()
        logger.info("Health server listening", port=self.port)

    def shutdown(self) -> None:
        if not self._started.is_set():
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)
        self._started.clear()

    def set_live(self, live: bool = True) -> None:
        self._state.set_live(live)

    def add_check(self, name: str, check: ReadinessCheck) -> None:
        self._state.add_check(name, check)

    def snapshot(self) -> Dict[str, object]:
        return self._state.snapshot()

    def __enter__(self) -> "HealthServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.shutdown()
        return None


__all__ = ["HealthServer", "ReadinessCheck"]
