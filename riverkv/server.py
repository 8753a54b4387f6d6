"""HTTP front end for the storage engine, with graceful restart on SIGUSR2."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from .block import KeyNotFoundError
from .engine import Engine

CHILD_READY_TIMEOUT = 10.0

_log = logging.getLogger(__name__)


class _Server(ThreadingHTTPServer):
    daemon_threads = True


class _Server6(_Server):
    address_family = socket.AF_INET6


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (host may be empty or a bracketed IPv6 literal)."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address {address!r}")
    if not port.isdigit():
        raise ValueError(f"invalid port in address {address!r}")
    number = int(port)
    if number > 65535:
        raise ValueError(f"invalid port in address {address!r}")
    return host, number


def make_handler(engine: Engine) -> type[BaseHTTPRequestHandler]:
    """Request handler class serving the engine's HTTP endpoints."""

    class Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def log_message(self, format: str, *args) -> None:
            _log.debug("%s - %s", self.address_string(), format % args)

        def _send(
            self,
            status: int,
            body: bytes,
            content_type: str = "text/plain; charset=utf-8",
            extra: dict[str, str] | None = None,
        ) -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            for name, value in (extra or {}).items():
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _error(self, status: int, message: str) -> None:
            self._send(
                status,
                (message + "\n").encode("utf-8"),
                extra={"X-Content-Type-Options": "nosniff"},
            )

        def _read_body(self) -> bytes:
            length = self.headers.get("Content-Length")
            if not length:
                return b""
            return self.rfile.read(int(length))

        def _dispatch(self) -> None:
            url = urlsplit(self.path)
            try:
                body = self._read_body()
            except (ValueError, OSError) as exc:
                self._error(500, f"Error reading body: {exc}")
                return
            query = parse_qs(url.query, keep_blank_values=True)
            key = query.get("key", [""])[0]
            routes = {
                "/health": self._health,
                "/get": self._get,
                "/put": self._put,
                "/delete": self._delete,
                "/stats": self._stats,
            }
            route = routes.get(url.path)
            if route is None:
                self._error(404, "404 page not found")
                return
            route(key, body)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _dispatch

        def _health(self, key: str, body: bytes) -> None:
            self._send(200, b"OK")

        def _get(self, key: str, body: bytes) -> None:
            if self.command != "GET":
                self._error(405, "Method not allowed")
                return
            if not key:
                self._error(400, "Key is required")
                return
            try:
                value = engine.get(key.encode("utf-8"))
            except KeyNotFoundError:
                self._error(404, "Key not found")
                return
            except Exception as exc:
                self._error(500, f"Error: {exc}")
                return
            self._send(200, value, content_type="application/octet-stream")

        def _put(self, key: str, body: bytes) -> None:
            if self.command != "POST":
                self._error(405, "Method not allowed")
                return
            if not key:
                self._error(400, "Key is required")
                return
            try:
                engine.put(key.encode("utf-8"), body)
            except Exception as exc:
                self._error(500, f"Error: {exc}")
                return
            self._send(200, b"OK")

        def _delete(self, key: str, body: bytes) -> None:
            if self.command != "DELETE":
                self._error(405, "Method not allowed")
                return
            if not key:
                self._error(400, "Key is required")
                return
            try:
                engine.delete(key.encode("utf-8"))
            except Exception as exc:
                self._error(500, f"Error: {exc}")
                return
            self._send(200, b"OK")

        def _stats(self, key: str, body: bytes) -> None:
            if self.command != "GET":
                self._error(405, "Method not allowed")
                return
            try:
                payload = json.dumps(dataclasses.asdict(engine.stats())).encode("utf-8")
            except Exception as exc:
                self._error(500, f"Error: {exc}")
                return
            self._send(200, payload, content_type="application/json")

    return Handler


def create_server(engine: Engine, address: str) -> ThreadingHTTPServer:
    """Bind an HTTP server for ``engine`` to ``address``."""
    host, port = parse_address(address)
    server_cls = _Server6 if ":" in host else _Server
    return server_cls((host, port), make_handler(engine))


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Key-value storage server")
    parser.add_argument("-data-dir", "--data-dir", dest="data_dir", default="./data",
                        help="Directory for storing data")
    parser.add_argument("-http-addr", "--http-addr", dest="http_addr", default=":8080",
                        help="HTTP server address")
    parser.add_argument("-graceful", "--graceful", dest="graceful", action="store_true",
                        help="Graceful restart (internal use only)")
    parser.add_argument("-parent-pid", "--parent-pid", dest="parent_pid", type=int, default=0,
                        help="Parent PID for graceful restart (internal use only)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the server until it receives SIGINT, SIGTERM or SIGUSR2."""
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    try:
        Path(args.data_dir).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _log.critical("Failed to create data directory: %s", exc)
        return 1

    try:
        engine = Engine(args.data_dir)
    except Exception as exc:
        _log.critical("Failed to create storage engine: %s", exc)
        return 1

    try:
        server = create_server(engine, args.http_addr)
    except (OSError, ValueError) as exc:
        _log.critical("HTTP server error: %s", exc)
        engine.close()
        return 1

    sig_usr1 = getattr(signal, "SIGUSR1", None)
    sig_usr2 = getattr(signal, "SIGUSR2", None)
    state: dict[str, int | bool | None] = {"signal": None, "child_ready": False}

    def on_signal(signum, frame) -> None:
        state["signal"] = signum

    def on_child_ready(signum, frame) -> None:
        state["child_ready"] = True

    for sig in (signal.SIGINT, signal.SIGTERM, sig_usr2):
        if sig is not None:
            signal.signal(sig, on_signal)
    if sig_usr1 is not None:
        signal.signal(sig_usr1, on_child_ready)

    if args.graceful and args.parent_pid > 0:
        _log.info("Child process started, parent PID: %d", args.parent_pid)
        if sig_usr1 is not None:
            try:
                os.kill(args.parent_pid, sig_usr1)
            except OSError:
                pass

    thread = threading.Thread(target=server.serve_forever, name="http-server", daemon=True)
    _log.info("Starting HTTP server on %s", args.http_addr)
    thread.start()

    while state["signal"] is None:
        time.sleep(0.2)
    signum = state["signal"]
    _log.info("Received signal: %s", signal.Signals(signum).name)

    if sig_usr2 is not None and signum == sig_usr2:
        _log.info("Graceful restart requested")
        command = [
            sys.executable, "-m", "riverkv.server",
            "-data-dir", args.data_dir,
            "-http-addr", args.http_addr,
            "-graceful",
            "-parent-pid", str(os.getpid()),
        ]
        try:
            process = subprocess.Popen(command)
        except OSError as exc:
            _log.critical("Failed to start new process: %s", exc)
            server.shutdown()
            server.server_close()
            engine.close()
            return 1
        deadline = time.monotonic() + CHILD_READY_TIMEOUT
        while not state["child_ready"] and time.monotonic() < deadline:
            time.sleep(0.1)
        if state["child_ready"]:
            _log.info("Child process ready, shutting down")
        else:
            _log.info("Timeout waiting for child process, shutting down anyway")
            process.kill()

    _log.info("Shutting down HTTP server")
    server.shutdown()
    server.server_close()

    _log.info("Closing storage engine")
    engine.close()

    _log.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())