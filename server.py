#!/usr/bin/env python3

import argparse
import asyncio
import functools
import json
import logging
import socket

import netifaces
import websockets.exceptions
from websockets.asyncio.server import serve

import config
from emitters import BroadcastEmitter, encode_event
from session import TraceController
from static_server import start_static_server_thread


# --- Helper Functions ---
def get_local_ip():
    """Finds a suitable non-loopback IPv4 address for the server."""
    try:
        for iface_name in netifaces.interfaces():
            if iface_name == 'lo': continue
            ifaddresses = netifaces.ifaddresses(iface_name)
            for link in ifaddresses.get(netifaces.AF_INET, []):
                ip = link.get('addr')
                # Prefer non-link-local, non-loopback
                if ip and not ip.startswith('127.') and not ip.startswith('169.254.'):
                    logging.info(f"Using local IP {ip} from interface {iface_name}")
                    return ip
    except (OSError, ValueError) as e:
        logging.error(f"Could not determine local IP: {e}")
    logging.warning("Could not automatically determine local IP. Using 0.0.0.0")
    return "0.0.0.0"


# --- WebSocket Handler ---
async def handle_command(raw, websocket, controller, emitter, client_log_prefix):
    """Applies one {"command": ...} message sent by a client."""
    try:
        message = json.loads(raw)
        command = message.get("command")
    except (ValueError, AttributeError):
        logging.warning(f"{client_log_prefix} Could not parse command: '{raw}'")
        await websocket.send(encode_event(config.EVENT_ERROR, {"message": "invalid command"}))
        return

    if command == "start_trace":
        host = message.get("host")
        if not isinstance(host, str) or not host.strip():
            await websocket.send(encode_event(config.EVENT_ERROR, {"message": "missing host"}))
            return
        logging.info(f"{client_log_prefix} start_trace {host}")
        controller.start(host, emitter)
    elif command == "stop_trace":
        logging.info(f"{client_log_prefix} stop_trace")
        controller.stop()
    else:
        logging.warning(f"{client_log_prefix} Unknown command: {command}")
        await websocket.send(encode_event(config.EVENT_ERROR, {"message": f"unknown command {command}"}))


async def handle_connection(websocket, controller, emitter):
    """Subscribes a client to trace events and serves its commands until it disconnects."""
    client_ip, client_port = websocket.remote_address[:2]
    client_log_prefix = f"[{client_ip}:{client_port}]"
    logging.info(f"{client_log_prefix} WebSocket connection established")

    emitter.connections.add(websocket)
    try:
        async for raw in websocket:
            await handle_command(raw, websocket, controller, emitter, client_log_prefix)
    except websockets.exceptions.ConnectionClosedError as e:
        logging.warning(f"{client_log_prefix} Connection closed abnormally: {e}")
    finally:
        emitter.connections.discard(websocket)
        logging.info(f"{client_log_prefix} WebSocket connection closed")


# --- Main Server Logic ---
async def main(args):
    server_ip = get_local_ip()
    if server_ip == "0.0.0.0":
        # Attempt fallback using hostname resolution
        try:
            ip_via_hostname = socket.gethostbyname(socket.gethostname())
            if not ip_via_hostname.startswith("127."):
                server_ip = ip_via_hostname
        except socket.gaierror:
            logging.error("Could not resolve hostname to IP either.")

    loop = asyncio.get_running_loop()
    controller = TraceController(ping_interval_s=args.interval)
    emitter = BroadcastEmitter(set())

    http_thread = start_static_server_thread(args.http_port, args.static_dir, loop, controller, emitter)
    if not http_thread:
        logging.error("HTTP server thread failed to start. Only WebSocket commands will work.")

    display_ip = server_ip if server_ip != "0.0.0.0" else "localhost"
    logging.info(f"Open the client at http://{display_ip}:{args.http_port}")
    logging.info(f"WebSocket events at ws://{display_ip}:{args.port}")

    handler = functools.partial(handle_connection, controller=controller, emitter=emitter)
    try:
        async with serve(handler, "0.0.0.0", args.port):
            logging.info(f"WebSocket server started on port {args.port}")
            await asyncio.Future() # Run until cancelled
    except OSError as e:
        if "address already in use" in str(e).lower():
            logging.error(f"WebSocket server failed to start: Port {args.port} is already in use.")
        else:
            logging.error(f"WebSocket server failed to start due to OS error: {e}")
    finally:
        logging.info("Server shutting down...")
        controller.close()
        logging.info("Server shutdown complete.")


def build_argparser():
    ap = argparse.ArgumentParser(description="hopwatch traceroute and latency monitor server")
    ap.add_argument("--port", type=int, default=config.SERVER_PORT, help="WebSocket port")
    ap.add_argument("--http-port", type=int, default=config.STATIC_SERVER_PORT, help="HTTP API and static files port")
    ap.add_argument("--static-dir", default=config.STATIC_DIR, help="Directory holding the web client")
    ap.add_argument("--interval", type=float, default=config.PING_INTERVAL_S, help="Seconds between ping rounds")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def run():
    args = build_argparser().parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=config.LOG_FORMAT)
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        logging.info("Server stopped by user.")


if __name__ == "__main__":
    run()
