# tests/test_emitters.py
import asyncio
import io
import json

import emitters
from emitters import BroadcastEmitter, ConsoleEmitter
from models import HopInfo, PingSample

HOPS = [HopInfo(1, "10.0.0.1", "gw.local", 1), HopInfo(2, "93.184.216.34", "93.184.216.34", None)]


def test_broadcast_envelopes(monkeypatch):
    sent = []
    monkeypatch.setattr(emitters, "broadcast", lambda connections, message: sent.append((connections, message)))
    connections = {"client-a", "client-b"}
    emitter = BroadcastEmitter(connections)

    async def scenario():
        await emitter.emit_hop_list(HOPS)
        await emitter.emit_ping_data(PingSample(ip="10.0.0.1", latency=12, status="ok", seq=3))
        await emitter.emit_hop_list([])

    asyncio.run(scenario())

    assert all(target is connections for target, _ in sent)
    messages = [json.loads(message) for _, message in sent]
    assert messages[0] == {
        "event": "hop_list_updated",
        "payload": [
            {"hop": 1, "ip": "10.0.0.1", "hostname": "gw.local", "initial_latency": 1},
            {"hop": 2, "ip": "93.184.216.34", "hostname": "93.184.216.34", "initial_latency": None},
        ],
    }
    assert messages[1] == {
        "event": "new_ping_data",
        "payload": {"ip": "10.0.0.1", "latency": 12, "status": "ok", "seq": 3},
    }
    assert messages[2] == {"event": "hop_list_updated", "payload": []}


def test_console_output():
    out = io.StringIO()
    emitter = ConsoleEmitter(out)

    async def scenario():
        await emitter.emit_hop_list(HOPS)
        await emitter.emit_ping_data(PingSample(ip="10.0.0.1", latency=12, status="ok", seq=1))
        await emitter.emit_ping_data(PingSample(ip="93.184.216.34", latency=None, status="timeout", seq=1))
        await emitter.emit_ping_data(PingSample(ip="10.0.0.1", latency=9, status="ok", seq=2))
        await emitter.emit_hop_list([])

    asyncio.run(scenario())
    text = out.getvalue()
    assert "gw.local" in text
    assert text.count("-- round 1 --") == 1
    assert "-- round 2 --" in text
    assert "12 ms" in text and "timeout" in text
    assert "Discovery failed" in text
