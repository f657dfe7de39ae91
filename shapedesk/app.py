from __future__ import annotations
from PySide6 import QtCore
from typing import Dict, List, Mapping, Optional
import argparse
import logging
import signal
import subprocess
import sys

from .commands import check_required_tools
from .config import AppConfig, load_config
from .coordinator import InterfaceChooser, LimitRow, ShapingCoordinator, default_fields
from .errors import ExecutionFailure, ProtocolWriteFailure, ShapedeskError, ToolMissing
from .models import Interface, SocketTable, local_ports
from .sampler import BackendReader, PollWorker, ThroughputSampler
from .speeds import SpeedSample, global_label, match_program_speeds

log = logging.getLogger(__name__)


class _PollRunnable(QtCore.QRunnable):
    """Runs one poll on pool thread."""
    def __init__(self, worker: PollWorker):
        super().__init__()
        self._worker = worker
        self.setAutoDelete(True)

    def run(self):
        self._worker.tick()


class Controller(QtCore.QObject):
    """
    Glue between polling and the limit rows:
    - polls ss/ifstat every poll_interval_ms on the thread pool, one poll at a time
    - keeps one LimitRow per program seen, plus the global row
    - relays the interface selection to the backend
    - turns backend throughput reports into speed labels
    """
    def __init__(self, cfg: AppConfig, coordinator: ShapingCoordinator,
                 worker: Optional[PollWorker] = None, interface: Optional[str] = None,
                 reader: Optional[BackendReader] = None):
        super().__init__()
        self.cfg = cfg
        self.coordinator = coordinator
        self.wanted_interface = interface
        self._warned_interface = False

        self.global_row = LimitRow(coordinator, None, advanced=cfg.advanced,
                                   fields=default_fields(cfg.default_unit))
        self.program_rows: Dict[str, LimitRow] = {}
        self.chooser = InterfaceChooser(coordinator, cfg.ignored_interface_prefixes)
        self.interfaces: List[Interface] = []
        self.sockets: SocketTable = {}

        self.program_labels: Dict[str, str] = {}
        self.global_speed_label = global_label(SpeedSample())
        self._backend_reports_global = False

        self.worker = worker or PollWorker(live_status=cfg.live_interface_status,
                                           timeout_s=cfg.command_timeout_s)
        self.worker.sockets_ready.connect(self.on_sockets)
        self.worker.interfaces_ready.connect(self.on_interfaces)
        self.worker.poll_failed.connect(self.on_poll_failed)
        self.worker.poll_done.connect(self.on_poll_done)
        self._polling = False

        self.reader = reader
        if reader is not None:
            reader.program_speeds.connect(self.on_program_speeds)
            reader.global_speed.connect(self.on_global_speed)
            reader.backend_closed.connect(self.on_backend_closed)

        self._throughput: Optional[ThroughputSampler] = None
        self._pool = QtCore.QThreadPool.globalInstance()

        self.timer = QtCore.QTimer(self)
        self.timer.setInterval(cfg.poll_interval_ms)
        self.timer.timeout.connect(self._schedule_poll)

    def start(self):
        self._throughput = ThroughputSampler()
        if self.reader is not None:
            self.reader.start()
        self._schedule_poll()
        self.timer.start()
        log.info("[Controller] polling every %dms", self.cfg.poll_interval_ms)

    def _schedule_poll(self):
        # a slow or hung ss/ifstat must not pile up polls behind it
        if self._polling:
            log.debug("[Controller] poll still running, skipping tick")
            return
        self._polling = True
        self._pool.start(_PollRunnable(self.worker))

    # ── signal handlers ───────────────────────
    @QtCore.Slot()
    def on_poll_done(self):
        self._polling = False

    @QtCore.Slot(object)
    def on_sockets(self, table: SocketTable):
        self.sockets = table
        for name in table:
            if name not in self.program_rows:
                self.program_rows[name] = LimitRow(self.coordinator, name, advanced=self.cfg.advanced,
                                                   fields=default_fields(self.cfg.default_unit))
                log.debug("[Controller] new program %s on local ports %s",
                          name, ", ".join(local_ports(table, name)))
        if self._throughput is not None and not self._backend_reports_global:
            self.update_global_speed(self._local_global_speed())

    @QtCore.Slot(object)
    def on_interfaces(self, ifaces: List[Interface]):
        self.interfaces = ifaces
        options = self.chooser.refresh(ifaces)
        if self.wanted_interface and self.chooser.selected is None:
            if self.wanted_interface in options:
                try:
                    self.chooser.select(self.wanted_interface)
                except ProtocolWriteFailure:
                    # backend state is unknown from here on
                    QtCore.QCoreApplication.exit(2)
                    raise
            elif not self._warned_interface:
                self._warned_interface = True
                log.warning("[Controller] interface %s not found among %s", self.wanted_interface, options)

    @QtCore.Slot(str)
    def on_poll_failed(self, reason: str):
        log.error("[Controller] could not refresh network state: %s", reason)

    @QtCore.Slot(object)
    def on_program_speeds(self, reported: Mapping[str, SpeedSample]):
        self.update_program_speeds(reported)

    @QtCore.Slot(object)
    def on_global_speed(self, sample: SpeedSample):
        self._backend_reports_global = True
        self.update_global_speed(sample)

    @QtCore.Slot()
    def on_backend_closed(self):
        # nothing can be sent to a backend that has gone away
        log.critical("[Controller] shaping backend closed its output, stopping")
        QtCore.QCoreApplication.exit(2)

    # ── speeds ────────────────────────────────
    def update_program_speeds(self, reported: Mapping[str, SpeedSample]) -> Dict[str, str]:
        labels = match_program_speeds(self.program_rows, reported)
        for name, label in labels.items():
            log.debug("[Speed] %s %s", name, label)
        self.program_labels = labels
        return labels

    def update_global_speed(self, sample: SpeedSample) -> str:
        label = global_label(sample)
        log.debug("[Speed] global %s", label)
        self.global_speed_label = label
        return label

    def _local_global_speed(self) -> SpeedSample:
        per_nic = self._throughput.sample()
        if self.chooser.selected is not None:
            return per_nic.get(self.chooser.selected, SpeedSample())
        return SpeedSample(up=sum(s.up for s in per_nic.values()),
                           down=sum(s.down for s in per_nic.values()))


def launch_backend(command: str) -> subprocess.Popen:
    argv = command.split()
    if not argv:
        raise ValueError("backend_command is empty")
    log.info("[Backend] starting %s", command)
    try:
        return subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
    except FileNotFoundError as e:
        raise ToolMissing(argv[0], "Set backend_command in config.json to the shaping backend.") from e
    except OSError as e:
        raise ExecutionFailure(command, str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="shapedesk",
                                description="Per-program bandwidth limits on top of a tc shaping backend.")
    p.add_argument("--advanced", action="store_true",
                   help="also send guaranteed minimum rates")
    p.add_argument("--interface", help="interface the backend should shape")
    p.add_argument("--config", help="path to config.json")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(message)s")

    cfg = load_config(args.config)
    if args.advanced:
        cfg.advanced = True

    try:
        check_required_tools()
        backend = launch_backend(cfg.backend_command)
    except ShapedeskError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    coordinator = ShapingCoordinator(backend.stdin)

    app = QtCore.QCoreApplication(sys.argv[:1])
    reader = BackendReader(backend.stdout)
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # let the interpreter run so SIGINT is noticed
    heartbeat = QtCore.QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(250)

    controller = Controller(cfg, coordinator, interface=args.interface, reader=reader)
    controller.start()

    code = app.exec()

    # Cleanup
    controller.timer.stop()
    QtCore.QThreadPool.globalInstance().waitForDone()
    coordinator.close()
    backend.wait()
    reader.wait()
    sys.exit(code)


if __name__ == "__main__":
    main()
