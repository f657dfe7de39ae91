from __future__ import annotations
import functools
import logging
import threading
import time
import psutil
from typing import IO, Dict, Optional
from PySide6 import QtCore

from .collectors import interfaces, socket_table, with_live_status
from .commands import Runner, run
from .errors import ExecutionFailure, ProtocolError
from .protocol import decode_report
from .speeds import SpeedSample

log = logging.getLogger(__name__)


class PollWorker(QtCore.QObject):
    """
    Runs ss and ifstat and emits fresh snapshots.
    tick() blocks on the external tools, so it is meant for a pool thread.
    Only one tick runs at a time; an overlapping call returns without polling.
    """

    sockets_ready = QtCore.Signal(object)    # SocketTable
    interfaces_ready = QtCore.Signal(object) # List[Interface]
    poll_failed = QtCore.Signal(str)         # whole-command failure, never partial data
    poll_done = QtCore.Signal()

    def __init__(self, runner: Optional[Runner] = None, live_status: bool = False,
                 timeout_s: float = 0):
        super().__init__()
        if runner is None:
            runner = functools.partial(run, timeout=timeout_s) if timeout_s else run
        self._runner = runner
        self._busy = threading.Lock()
        self.live_status = live_status

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @QtCore.Slot()
    def tick(self):
        if not self._busy.acquire(blocking=False):
            log.debug("[Poll] previous poll still running, skipping")
            return
        try:
            try:
                table = socket_table(self._runner)
            except ExecutionFailure as e:
                log.error("[Poll] socket listing failed: %s", e)
                self.poll_failed.emit(str(e))
            else:
                self.sockets_ready.emit(table)

            self._poll_interfaces()
        finally:
            self._busy.release()
            self.poll_done.emit()

    def _poll_interfaces(self):
        try:
            ifaces = interfaces(self._runner)
        except ExecutionFailure as e:
            log.error("[Poll] interface listing failed: %s", e)
            self.poll_failed.emit(str(e))
            return
        if self.live_status:
            ifaces = with_live_status(ifaces)
        self.interfaces_ready.emit(ifaces)


class BackendReader(QtCore.QThread):
    """
    Reads throughput reports from the backend's stdout until it closes.
    Lines that are not reports are logged and skipped.
    """

    program_speeds = QtCore.Signal(object)   # Dict[str, SpeedSample]
    global_speed = QtCore.Signal(object)     # SpeedSample
    backend_closed = QtCore.Signal()

    def __init__(self, stream: IO[bytes]):
        super().__init__()
        self._stream = stream

    def run(self):
        try:
            for raw in iter(self._stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    report = decode_report(line)
                except ProtocolError as e:
                    log.debug("[Backend] ignoring output line: %s", e)
                    continue
                if isinstance(report, SpeedSample):
                    self.global_speed.emit(report)
                else:
                    self.program_speeds.emit(report)
        except (OSError, ValueError) as e:
            log.error("[Backend] reading backend output failed: %s", e)
        self.backend_closed.emit()


class ThroughputSampler:
    """
    Per-interface byte rate from psutil counters, in KB/sec.
    Used for the global row until the backend reports its own numbers.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last_net = psutil.net_io_counters(pernic=True)
        self._last_ts = clock()

    def sample(self) -> Dict[str, SpeedSample]:
        cur_net = psutil.net_io_counters(pernic=True)
        t = self._clock()
        dt = max(0.001, t - self._last_ts)

        out: Dict[str, SpeedSample] = {}
        for nic, cur in cur_net.items():
            prev = self._last_net.get(nic)
            if prev is None:
                continue
            # counters can wrap or reset when a link is re-created
            up = max(0, cur.bytes_sent - prev.bytes_sent) / dt / 1024
            down = max(0, cur.bytes_recv - prev.bytes_recv) / dt / 1024
            out[nic] = SpeedSample(up=up, down=down)

        self._last_net = cur_net
        self._last_ts = t
        return out
