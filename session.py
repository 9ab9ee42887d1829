#!/usr/bin/env python3
"""
Single-flight trace session control: at most one live session per controller.
A session discovers the hops to a host, then pings every hop once per round
until it is stopped or superseded by a newer session.
"""

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import config
from exceptions import DiscoveryError
from netutils import NetworkUtilities
from pinger import PingMonitor
from tracer import HopDiscovery


class TraceSession:
    """State of one trace: its cancel flag, task handles and the discovery subprocess pid."""

    def __init__(self, host, emitter):
        self.host = host
        self.emitter = emitter
        self.log_prefix = f"[{host}]"
        # threading.Event because the discovery worker thread polls it too
        self.cancel_event = threading.Event()
        self.task = None
        self.monitor_task = None
        self.monitor = None
        self._pid = None
        self._pid_lock = threading.Lock()

    @property
    def cancelled(self):
        return self.cancel_event.is_set()

    @property
    def discovery_pid(self):
        with self._pid_lock:
            return self._pid

    def set_discovery_pid(self, pid):
        with self._pid_lock:
            self._pid = pid

    def cancel(self, utilities):
        """
        Stops everything this session started. Safe to call repeatedly.
        Must run on the event loop thread since it cancels tasks.
        """
        self.cancel_event.set()
        for task in (self.monitor_task, self.task):
            if task is not None and not task.done():
                task.cancel()
        with self._pid_lock:
            pid, self._pid = self._pid, None
        if pid is not None:
            logging.info(f"{self.log_prefix} Killing discovery process {pid}")
            utilities.kill_process(pid)


class TraceController:
    """Owns the current TraceSession and the worker pool used for blocking discovery."""

    def __init__(self, utilities=None, ping_interval_s=config.PING_INTERVAL_S, max_rounds=None):
        self.utilities = utilities or NetworkUtilities()
        self.discovery = HopDiscovery(self.utilities)
        self.ping_interval_s = ping_interval_s
        self.max_rounds = max_rounds
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="discovery")
        self.current = None
        self._lock = threading.Lock()

    def start(self, host, emitter):
        """
        Supersedes any running session and starts tracing host in the background.

        Must be called on the event loop thread. Returns the new TraceSession
        without waiting for discovery; results reach the emitter as events.
        """
        host = host.strip()
        with self._lock:
            if self.current is not None:
                logging.info(f"{self.current.log_prefix} Superseded by new trace to {host}")
                self.current.cancel(self.utilities)
            session = TraceSession(host, emitter)
            self.current = session
            session.task = asyncio.create_task(self._run_session(session), name=f"trace-{host}")
        logging.info(f"{session.log_prefix} Trace session started")
        return session

    def stop(self):
        """Cancels the current session, if any. Idempotent."""
        with self._lock:
            session, self.current = self.current, None
        if session is None:
            logging.debug("stop called with no active session")
            return
        logging.info(f"{session.log_prefix} Stopping trace session")
        session.cancel(self.utilities)

    def close(self):
        self.stop()
        self.executor.shutdown(wait=False)

    async def _forward_progress(self, session, queue):
        """Emits the growing hop list each time the discovery thread reports a hop."""
        partial = []
        while True:
            hop = await queue.get()
            if hop is None:
                return
            if session.cancelled:
                continue
            partial.append(hop)
            await session.emitter.emit_hop_list(list(partial))

    async def _run_session(self, session):
        loop = asyncio.get_running_loop()
        queue = asyncio.Queue()
        forwarder = asyncio.create_task(self._forward_progress(session, queue))

        def progress(hop):
            loop.call_soon_threadsafe(queue.put_nowait, hop)

        hops = None
        try:
            hops = await loop.run_in_executor(self.executor, self.discovery.run, session, progress)
        except DiscoveryError as e:
            logging.error(f"{session.log_prefix} Discovery error: {e}")
        except Exception as e:
            logging.error(f"{session.log_prefix} Unexpected discovery failure: {e}", exc_info=True)
        finally:
            # Progress callbacks were scheduled before the executor result, so the sentinel lands last
            queue.put_nowait(None)

        await forwarder

        if session.cancelled:
            logging.info(f"{session.log_prefix} Cancelled before final hop list; exiting")
            return

        if not hops:
            await session.emitter.emit_hop_list([])
            logging.warning(f"{session.log_prefix} No hops to monitor; session ends")
            return

        logging.info(f"{session.log_prefix} Emitting final hop list with {len(hops)} hops")
        await session.emitter.emit_hop_list(hops)
        if session.cancelled:
            return

        session.monitor = PingMonitor(self.utilities, session.emitter, session.cancel_event,
                                      interval_s=self.ping_interval_s,
                                      max_rounds=self.max_rounds,
                                      log_prefix=session.log_prefix)
        session.monitor_task = asyncio.create_task(session.monitor.run(hops), name=f"ping-{session.host}")
        session.monitor_task.add_done_callback(self._monitor_done)

    @staticmethod
    def _monitor_done(task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logging.error(f"Ping loop crashed: {exc}", exc_info=exc)
