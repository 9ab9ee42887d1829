#!/usr/bin/env python3
"""
Adapter for the platform network utilities hopwatch drives: traceroute/tracert
for hop discovery and ping for monitoring. Everything that depends on the host
platform (command lines, output grammars, process termination) lives here.
"""

import asyncio
import ipaddress
import logging
import math
import os
import re
import signal
import socket
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional, Tuple

import config

CREATE_NO_WINDOW = 0x08000000 # Windows: do not flash a console per child

# Matches "time=12.3 ms", "time=14ms" and "time<1ms"
PING_LATENCY_RE = re.compile(r"time\s*([=<])\s*(\d+(?:\.\d+)?)", re.IGNORECASE)


@dataclass(frozen=True)
class TraceGrammar:
    """Line grammar of one platform's trace utility output."""
    name: str
    header_prefixes: Tuple[str, ...]
    timeout_markers: Tuple[str, ...]
    no_reply_token: str
    ip_index: int
    latency_index: int
    latency_strip: str
    dedupe: bool


# " 1  192.168.1.1  0.512 ms"
POSIX_TRACE = TraceGrammar(
    name="traceroute",
    header_prefixes=("traceroute ",),
    timeout_markers=(),
    no_reply_token="*",
    ip_index=1,
    latency_index=2,
    latency_strip="",
    dedupe=False,
)

# "  1    <1 ms    <1 ms    <1 ms  192.168.1.1"
WINDOWS_TRACE = TraceGrammar(
    name="tracert",
    header_prefixes=("Tracing route to", "over a maximum", "Trace complete"),
    timeout_markers=("Request timed out",),
    no_reply_token="*",
    ip_index=-1,
    latency_index=1,
    latency_strip="<",
    dedupe=True,
)


def is_ip(value):
    """True if value is a literal IPv4 or IPv6 address."""
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def grammar_for(platform):
    return WINDOWS_TRACE if platform == "win32" else POSIX_TRACE


def parse_trace_line(line: str, grammar: TraceGrammar) -> Optional[Tuple[int, str, Optional[int]]]:
    """
    Parses one line of trace utility output.

    Args:
        line: Raw output line.
        grammar: The TraceGrammar of the utility that produced it.

    Returns:
        (hop, ip, initial_latency_ms) or None when the line carries no usable hop.
    """
    line = line.strip()
    if not line or line.startswith(grammar.header_prefixes):
        return None

    parts = line.split()
    try:
        hop = int(parts[0])
    except ValueError:
        return None
    if hop <= 0 or len(parts) < 2:
        return None
    if any(marker in line for marker in grammar.timeout_markers):
        return None

    ip = parts[grammar.ip_index]
    if ip == grammar.no_reply_token or not is_ip(ip):
        return None

    latency = None
    if len(parts) > grammar.latency_index:
        token = parts[grammar.latency_index].lstrip(grammar.latency_strip)
        try:
            latency = round(float(token))
        except (ValueError, OverflowError):
            pass # No latency on this line, the hop itself is still valid
    return hop, ip, latency


def parse_ping_latency(output: str) -> Optional[int]:
    """
    Extracts the round-trip time in whole milliseconds from ping output.

    "time=" values are rounded. "time<" values report the bound, never below 1 ms.
    Returns None when no time marker is present.
    """
    match = PING_LATENCY_RE.search(output)
    if not match:
        return None
    value = float(match.group(2))
    if match.group(1) == "<":
        return max(1, math.ceil(value))
    return round(value)


def trace_command(host, platform):
    if platform == "win32":
        wait_ms = int(config.TRACE_PROBE_WAIT_S * 1000)
        return ["tracert", "-d", "-h", str(config.MAX_HOPS), "-w", str(wait_ms), host]
    return ["traceroute", "-n", "-q", "1", "-w", str(config.TRACE_PROBE_WAIT_S),
            "-m", str(config.MAX_HOPS), host]


def ping_command(ip, timeout_s, platform):
    if platform == "win32":
        return ["ping", "-n", "1", "-w", str(int(timeout_s * 1000)), ip]
    if platform == "darwin":
        # BSD ping takes -W in milliseconds
        return ["ping", "-c", "1", "-W", str(int(timeout_s * 1000)), ip]
    return ["ping", "-c", "1", "-W", f"{timeout_s:.3f}", ip]


def kill_process(pid, platform):
    """Force-kills pid (with its children on Windows). Already exited processes are ignored."""
    if platform == "win32":
        try:
            subprocess.run(["taskkill", "/PID", str(pid), "/T", "/F"],
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                           creationflags=CREATE_NO_WINDOW, check=False)
        except OSError as e:
            logging.warning(f"Could not run taskkill for pid {pid}: {e}")
        return

    try:
        os.kill(pid, signal.SIGKILL)
        logging.debug(f"Sent SIGKILL to pid {pid}")
    except ProcessLookupError:
        logging.debug(f"Process {pid} already exited")
    except PermissionError as e:
        logging.warning(f"Not permitted to kill pid {pid}: {e}")


class NetworkUtilities:
    """Launches the platform's trace and ping utilities and handles name resolution."""

    def __init__(self, platform=None, resolve_hostnames=config.RESOLVE_HOSTNAMES):
        self.platform = platform or sys.platform
        self.resolve_hostnames = resolve_hostnames
        self.trace_grammar = grammar_for(self.platform)

    def _creation_kwargs(self):
        if self.platform == "win32":
            return {"creationflags": CREATE_NO_WINDOW}
        return {}

    def spawn_trace(self, host):
        """Starts the trace utility with line-buffered text stdout. Raises OSError if it cannot be launched."""
        cmd = trace_command(host, self.platform)
        logging.debug(f"Spawning {' '.join(cmd)}")
        return subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
            **self._creation_kwargs()
        )

    async def ping(self, ip, timeout_s=config.PING_TIMEOUT_S, hard_timeout_s=config.PING_HARD_TIMEOUT_S):
        """
        Runs the ping utility once against ip.

        Args:
            ip: Literal address to probe.
            timeout_s: Reply timeout handed to the utility.
            hard_timeout_s: Upper bound on the whole subprocess call.

        Returns:
            (returncode, stdout text)

        Raises:
            OSError: The utility could not be launched.
            asyncio.TimeoutError: The utility overran hard_timeout_s and was killed.
        """
        cmd = ping_command(ip, timeout_s, self.platform)
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            **self._creation_kwargs()
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=hard_timeout_s)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            raise
        return proc.returncode, out.decode(errors="replace")

    def resolve(self, host):
        """Returns the first address host resolves to, or None."""
        try:
            infos = socket.getaddrinfo(host, None)
        except (OSError, UnicodeError) as e:
            logging.warning(f"Could not resolve {host}: {e}")
            return None
        if not infos:
            return None
        return infos[0][4][0]

    def reverse_dns(self, ip):
        """Resolve the hostname of a given IP address, falling back to the IP."""
        if not self.resolve_hostnames:
            return ip
        try:
            return socket.gethostbyaddr(ip)[0]
        except (OSError, UnicodeError):
            return ip

    def kill_process(self, pid):
        kill_process(pid, self.platform)
