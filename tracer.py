#!/usr/bin/env python3

import logging

from exceptions import DiscoveryError
from models import HopInfo
from netutils import parse_trace_line


class HopDiscovery:
    """Runs the platform trace utility once and turns its output into an ordered hop list."""

    def __init__(self, utilities):
        self.utilities = utilities

    def run(self, session, progress=None):
        """
        Discovers the hops towards session.host. Blocking, meant to run in a worker thread.

        The trace subprocess pid is published on the session while it runs so that
        stop() can kill it from another thread. The session's cancel flag is checked
        once per output line.

        Args:
            session: The TraceSession being served.
            progress: Optional callable receiving each HopInfo as soon as it is parsed.

        Returns:
            Ordered list of HopInfo. Empty only if nothing parsed and the destination
            does not resolve, or the session was cancelled first.

        Raises:
            DiscoveryError: The utility could not be launched or read, or exited
                unsuccessfully without yielding a single hop.
        """
        host = session.host
        log_prefix = f"[{host}]"
        if not host or host.startswith("-"):
            raise DiscoveryError(f"Invalid destination {host!r}")

        grammar = self.utilities.trace_grammar
        try:
            proc = self.utilities.spawn_trace(host)
        except OSError as e:
            raise DiscoveryError(f"Could not launch {grammar.name}: {e}") from e

        session.set_discovery_pid(proc.pid)
        if session.cancelled:
            # stop() ran before the pid was published and had nothing to kill
            proc.kill()
        logging.info(f"{log_prefix} {grammar.name} started (pid {proc.pid})")

        hops = []
        seen = set()
        try:
            for line in proc.stdout:
                parsed = parse_trace_line(line, grammar)
                if parsed is not None:
                    hop, ip, latency = parsed
                    if grammar.dedupe and (hop, ip) in seen:
                        logging.debug(f"{log_prefix} Duplicate hop {hop} ({ip}) skipped")
                    else:
                        seen.add((hop, ip))
                        info = HopInfo(hop=hop, ip=ip, hostname=self.utilities.reverse_dns(ip),
                                       initial_latency=latency)
                        logging.info(f"{log_prefix} Hop {hop}: {info.hostname} ({ip}) {latency} ms")
                        if progress:
                            progress(info)
                        hops.append(info)
                if session.cancelled:
                    logging.info(f"{log_prefix} Cancel detected, stopping {grammar.name} reader")
                    break
        except OSError as e:
            proc.kill()
            raise DiscoveryError(f"Failed reading {grammar.name} output: {e}") from e
        finally:
            if session.cancelled:
                proc.kill()
            returncode = proc.wait()
            proc.stdout.close()
            session.set_discovery_pid(None)

        if session.cancelled:
            return hops

        if returncode != 0 and not hops:
            raise DiscoveryError(f"{grammar.name} exited with code {returncode} and no hops")

        if not hops:
            logging.warning(f"{log_prefix} {grammar.name} produced 0 hops; resolving destination directly")
            ip = self.utilities.resolve(host)
            if ip:
                info = HopInfo(hop=1, ip=ip, hostname=self.utilities.reverse_dns(ip), initial_latency=None)
                if progress:
                    progress(info)
                hops.append(info)

        logging.info(f"{log_prefix} Discovery collected {len(hops)} hops")
        return hops
