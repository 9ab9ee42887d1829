#!/usr/bin/env python3

import json
import logging
from abc import ABC, abstractmethod

from websockets.asyncio.server import broadcast

import config


class TraceEmitter(ABC):
    """Receives the events a trace session produces. Implementations must not block."""

    @abstractmethod
    async def emit_hop_list(self, hops):
        """Called with the current (possibly partial) ordered list of HopInfo. Empty means discovery failed."""
        raise NotImplementedError

    @abstractmethod
    async def emit_ping_data(self, sample):
        """Called with one PingSample as soon as its probe completes."""
        raise NotImplementedError


def encode_event(event, payload):
    return json.dumps({"event": event, "payload": payload})


class BroadcastEmitter(TraceEmitter):
    """Publishes events as JSON envelopes to every connected WebSocket client."""

    def __init__(self, connections):
        # Live set, the server adds and removes connections as clients come and go
        self.connections = connections

    def publish(self, event, payload):
        # broadcast() writes without waiting, slow clients get skipped rather than stall probing
        broadcast(self.connections, encode_event(event, payload))

    async def emit_hop_list(self, hops):
        self.publish(config.EVENT_HOP_LIST, [hop.to_dict() for hop in hops])

    async def emit_ping_data(self, sample):
        self.publish(config.EVENT_PING_DATA, sample.to_dict())


class ConsoleEmitter(TraceEmitter):
    """Prints hops and samples to a terminal."""

    def __init__(self, out=None):
        self.out = out
        self.last_seq = 0

    def _print(self, text):
        print(text, file=self.out, flush=True)

    async def emit_hop_list(self, hops):
        if not hops:
            self._print("Discovery failed: no hops found.")
            return
        self._print(f"\n{'Hop':>3}  {'IP':<39}  {'Hostname':<40}  Initial")
        for hop in hops:
            latency = f"{hop.initial_latency} ms" if hop.initial_latency is not None else "*"
            self._print(f"{hop.hop:>3}  {hop.ip:<39}  {hop.hostname:<40}  {latency}")

    async def emit_ping_data(self, sample):
        if sample.seq != self.last_seq:
            self.last_seq = sample.seq
            self._print(f"-- round {sample.seq} --")
        if sample.latency is not None:
            self._print(f"  {sample.ip:<39}  {sample.latency} ms")
        else:
            logging.debug(f"Ping {sample.ip} status {sample.status}")
            self._print(f"  {sample.ip:<39}  {sample.status}")
