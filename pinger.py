#!/usr/bin/env python3

import asyncio
import logging
import time

import config
from models import (PingSample, STATUS_OK, STATUS_TIMEOUT, STATUS_ERROR,
                    STATUS_INVALID_IP)
from netutils import is_ip, parse_ping_latency


class PingMonitor:
    """Probes every hop of a fixed hop list once per round until the session is cancelled."""

    def __init__(self, utilities, emitter, cancel_event,
                 interval_s=config.PING_INTERVAL_S,
                 timeout_s=config.PING_TIMEOUT_S,
                 hard_timeout_s=config.PING_HARD_TIMEOUT_S,
                 max_rounds=None,
                 log_prefix=""):
        self.utilities = utilities
        self.emitter = emitter
        self.cancel_event = cancel_event
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.hard_timeout_s = hard_timeout_s
        self.max_rounds = max_rounds
        self.log_prefix = log_prefix
        self.seq = 0

    async def run(self, hops):
        """
        Runs monitoring rounds until cancelled. The cancel flag is checked at the top of
        every round. Returns early after max_rounds rounds when that is set.
        """
        logging.info(f"{self.log_prefix} Starting continuous ping loop over {len(hops)} hops")
        while True:
            if self.cancel_event.is_set():
                logging.info(f"{self.log_prefix} Ping loop: cancel detected, exiting after round {self.seq}")
                return
            if self._rounds_done():
                return
            self.seq += 1
            await self.run_round(hops, self.seq)
            if self._rounds_done():
                logging.info(f"{self.log_prefix} Ping loop: finished {self.seq} rounds")
                return
            await asyncio.sleep(self.interval_s)

    def _rounds_done(self):
        return self.max_rounds is not None and self.seq >= self.max_rounds

    async def run_round(self, hops, seq):
        """Probes all hops concurrently and waits for every probe to finish."""
        await asyncio.gather(*(self._probe_and_emit(hop, seq) for hop in hops))

    async def _probe_and_emit(self, hop, seq):
        sample = await self.probe(hop.ip, seq)
        await self.emitter.emit_ping_data(sample)

    async def probe(self, ip, seq):
        """
        Pings ip once and classifies the outcome.

        Returns:
            PingSample with status invalid_ip, error, timeout or ok.
        """
        if not is_ip(ip):
            logging.warning(f"{self.log_prefix} Invalid ip for hop: {ip}")
            return PingSample(ip=ip, latency=None, status=STATUS_INVALID_IP, seq=seq)

        start = time.monotonic()
        try:
            returncode, output = await self.utilities.ping(ip, self.timeout_s, self.hard_timeout_s)
        except asyncio.TimeoutError:
            logging.debug(f"{self.log_prefix} Ping {ip} overran {self.hard_timeout_s}s and was killed")
            return PingSample(ip=ip, latency=None, status=STATUS_TIMEOUT, seq=seq)
        except Exception as e:
            # Spawn failures land here as OSError
            logging.error(f"{self.log_prefix} Ping {ip} error: {e}")
            return PingSample(ip=ip, latency=None, status=STATUS_ERROR, seq=seq)
        elapsed_ms = round((time.monotonic() - start) * 1000)

        if returncode != 0:
            return PingSample(ip=ip, latency=None, status=STATUS_TIMEOUT, seq=seq)

        latency = parse_ping_latency(output)
        if latency is None:
            latency = elapsed_ms
        return PingSample(ip=ip, latency=latency, status=STATUS_OK, seq=seq)
