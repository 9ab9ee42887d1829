# tests/test_tracer.py
import time

import pytest

from exceptions import DiscoveryError
from models import HopInfo
from netutils import WINDOWS_TRACE
from session import TraceSession
from tests.fakes import FakeUtilities
from tracer import HopDiscovery

HOST = "93.184.216.34"

POSIX_OUTPUT = [
    "traceroute to 93.184.216.34 (93.184.216.34), 30 hops max, 60 byte packets",
    " 1  10.0.0.1  0.512 ms",
    " 2  10.0.0.2  4.6 ms",
    " 3  *",
    " 4  93.184.216.34  11.2 ms",
]


def discover(utilities, host=HOST):
    session = TraceSession(host, emitter=None)
    seen = []
    hops = HopDiscovery(utilities).run(session, seen.append)
    return hops, seen, session


def test_hops_parsed_in_order_and_forwarded():
    """Every parsed hop goes to progress as it is found and ends up in the final list."""
    utilities = FakeUtilities(traces={HOST: POSIX_OUTPUT})
    hops, seen, session = discover(utilities)

    assert hops == [
        HopInfo(1, "10.0.0.1", "10.0.0.1", 1),
        HopInfo(2, "10.0.0.2", "10.0.0.2", 5),
        HopInfo(4, HOST, HOST, 11),
    ]
    assert seen == hops
    assert session.discovery_pid is None
    proc = utilities.spawned[0]
    assert proc.waited and not proc.killed
    assert proc.stdout.closed


def test_three_hop_example():
    lines = [" 1  10.0.0.1  1.0 ms", " 2  10.0.0.2  2.0 ms", " 3  93.184.216.34  3.0 ms"]
    hops, _, _ = discover(FakeUtilities(traces={HOST: lines}))
    assert [(h.hop, h.ip) for h in hops] == [(1, "10.0.0.1"), (2, "10.0.0.2"), (3, HOST)]


def test_windows_duplicates_suppressed():
    lines = [
        "Tracing route to example.com [93.184.216.34]",
        "over a maximum of 30 hops:",
        "",
        "  1    <1 ms    <1 ms    <1 ms  192.168.1.1",
        "  1    <1 ms    <1 ms    <1 ms  192.168.1.1",
        "  2     *        *        *     Request timed out.",
        "  3    14 ms    13 ms    15 ms  93.184.216.34",
        "",
        "Trace complete.",
    ]
    utilities = FakeUtilities(traces={HOST: lines}, grammar=WINDOWS_TRACE)
    hops, seen, _ = discover(utilities)
    assert [(h.hop, h.ip, h.initial_latency) for h in hops] == [
        (1, "192.168.1.1", 1),
        (3, HOST, 14),
    ]
    assert len(seen) == 2


def test_zero_hops_falls_back_to_destination():
    utilities = FakeUtilities(traces={"example.test": ["traceroute to example.test", " 1  *", " 2  *"]},
                              resolve_map={"example.test": HOST})
    hops, seen, _ = discover(utilities, host="example.test")
    assert hops == [HopInfo(hop=1, ip=HOST, hostname=HOST, initial_latency=None)]
    assert seen == hops


def test_zero_hops_and_unresolvable_gives_empty_list():
    hops, seen, _ = discover(FakeUtilities(traces={"nowhere.invalid": []}), host="nowhere.invalid")
    assert hops == []
    assert seen == []


def test_spawn_failure_raises_discovery_error():
    utilities = FakeUtilities(spawn_error=FileNotFoundError("traceroute"))
    with pytest.raises(DiscoveryError):
        discover(utilities)


def test_nonzero_exit_without_hops_is_an_error():
    utilities = FakeUtilities(traces={HOST: ["traceroute: unknown host"]}, returncode=2,
                              resolve_map={HOST: HOST})
    with pytest.raises(DiscoveryError):
        discover(utilities)


def test_nonzero_exit_tolerated_with_hops():
    utilities = FakeUtilities(traces={HOST: [" 1  10.0.0.1  1.0 ms"]}, returncode=1)
    hops, _, _ = discover(utilities)
    assert [h.ip for h in hops] == ["10.0.0.1"]


def test_option_like_host_rejected():
    utilities = FakeUtilities()
    with pytest.raises(DiscoveryError):
        discover(utilities, host="-f")
    assert utilities.spawned == []


def test_cancel_stops_reading_but_keeps_collected_hops():
    session = TraceSession(HOST, emitter=None)

    def lines():
        yield " 1  10.0.0.1  1.0 ms\n"
        session.cancel_event.set()
        yield " 2  10.0.0.2  2.0 ms\n"
        yield " 3  10.0.0.3  3.0 ms\n"

    utilities = FakeUtilities(traces={HOST: lines}, resolve_map={HOST: HOST})
    hops = HopDiscovery(utilities).run(session)

    assert [h.ip for h in hops] == ["10.0.0.1", "10.0.0.2"]
    assert utilities.spawned[0].killed
    assert session.discovery_pid is None


def test_cancel_before_any_hop_skips_fallback():
    session = TraceSession("example.test", emitter=None)

    def lines():
        session.cancel_event.set()
        yield "traceroute to example.test\n"

    utilities = FakeUtilities(traces={"example.test": lines}, resolve_map={"example.test": HOST})
    assert HopDiscovery(utilities).run(session) == []


def test_cancel_before_pid_published_kills_silent_trace():
    """A stop() that found no pid yet must not leave the reader waiting on a quiet trace."""
    session = TraceSession(HOST, emitter=None)
    session.cancel_event.set()
    utilities = FakeUtilities(traces={HOST: []}, hang=True)

    started = time.monotonic()
    assert HopDiscovery(utilities).run(session) == []
    assert time.monotonic() - started < 2
    assert utilities.spawned[0].killed
