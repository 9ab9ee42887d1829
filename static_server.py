#!/usr/bin/env python3

import functools
import http.server
import json
import logging
import os
import threading
from urllib.parse import urlsplit


class TraceRequestHandler(http.server.SimpleHTTPRequestHandler):
    """
    Serves the static client and the trace command API:

        POST /api/start  {"host": "example.com"}
        POST /api/stop

    Commands are handed to the controller on the asyncio loop thread.
    """

    def __init__(self, *args, loop=None, controller=None, emitter=None, **kwargs):
        # Attributes must exist before the base class starts handling the request
        self.loop = loop
        self.controller = controller
        self.emitter = emitter
        super().__init__(*args, **kwargs)

    def _send_json(self, code, data):
        body = json.dumps(data).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self):
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        return json.loads(raw) if raw else {}

    def do_POST(self):
        path = urlsplit(self.path).path
        if path == "/api/start":
            try:
                body = self._read_json()
            except ValueError as e:
                logging.warning(f"Bad /api/start body from {self.address_string()}: {e}")
                self._send_json(400, {"error": "invalid JSON body"})
                return
            host = body.get("host") if isinstance(body, dict) else None
            if not isinstance(host, str) or not host.strip():
                self._send_json(400, {"error": "missing host"})
                return
            logging.info(f"API start_trace for {host.strip()} from {self.address_string()}")
            self.loop.call_soon_threadsafe(self.controller.start, host, self.emitter)
            self._send_json(202, {"status": "started", "host": host.strip()})
        elif path == "/api/stop":
            logging.info(f"API stop_trace from {self.address_string()}")
            self.loop.call_soon_threadsafe(self.controller.stop)
            self._send_json(202, {"status": "stopped"})
        else:
            self._send_json(404, {"error": f"unknown endpoint {path}"})

    def send_head(self):
        # Unknown paths fall back to the single page client
        if not os.path.exists(self.translate_path(self.path)):
            self.path = "/index.html"
        return super().send_head()

    def log_message(self, format, *args):
        logging.debug(f"{self.address_string()} - {format % args}")


def make_static_server(port, directory, loop, controller, emitter):
    """
    Builds the HTTP server for static files and the command API.

    Args:
        port (int): Port to bind to, 0 for an ephemeral one.
        directory (str): Root directory to serve files from.
        loop: The asyncio loop the controller lives on.
        controller: TraceController receiving start/stop commands.
        emitter: TraceEmitter handed to every started session.
    """
    handler = functools.partial(TraceRequestHandler, directory=directory,
                                loop=loop, controller=controller, emitter=emitter)
    return http.server.ThreadingHTTPServer(("", port), handler)


def run_static_server(port, directory, loop, controller, emitter):
    """Runs the HTTP server until shutdown. Meant to run in a thread."""
    if not os.path.isdir(directory):
        logging.error(f"Static directory '{directory}' not found. Only the API will be useful.")

    try:
        with make_static_server(port, directory, loop, controller, emitter) as httpd:
            thread_name = threading.current_thread().name
            logging.info(f"HTTP server thread '{thread_name}' started on http://0.0.0.0:{port}, serving '{directory}'")
            httpd.serve_forever()
    except OSError as e:
        logging.error(f"HTTP server failed to start on port {port}: {e}") # Common error: Port in use
    finally:
        thread_name = threading.current_thread().name
        logging.info(f"HTTP server thread '{thread_name}' stopped.")


def start_static_server_thread(port, directory, loop, controller, emitter):
    """
    Starts the HTTP server in a separate daemon thread.

    Returns:
        threading.Thread: The server thread object, or None if failed.
    """
    server_thread = threading.Thread(
        target=run_static_server,
        args=(port, directory, loop, controller, emitter),
        daemon=True, # Allows main program exit even if thread runs
        name=f"HttpServerThread-{port}"
    )
    try:
        server_thread.start()
        return server_thread
    except RuntimeError as e:
        logging.error(f"Failed to start HTTP server thread: {e}")
        return None
