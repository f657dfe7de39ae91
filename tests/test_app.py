from __future__ import annotations
import io
import logging
import time

import pytest
from PySide6 import QtCore

from shapedesk import app
from shapedesk.app import Controller, build_parser, launch_backend
from shapedesk.config import AppConfig, save_config
from shapedesk.collectors import IFSTAT_COMMAND, SS_COMMAND
from shapedesk.coordinator import ShapingCoordinator
from shapedesk.errors import ToolMissing
from shapedesk.models import Connection, Interface, InterfaceSelection, ProgramLimit
from shapedesk.protocol import decode
from shapedesk.sampler import BackendReader, PollWorker
from shapedesk.speeds import SpeedSample

SS_OUTPUT = (
    "Recv-Q Send-Q Local Address:Port Peer Address:Port Process\n"
    '0 0 127.0.0.1:5000 93.1.2.3:443 users:(("chrome",pid=10,fd=5))\n'
)
IFSTAT_OUTPUT = "#kernel\nInterface\n  units\neth0 1 2\n  0 0\n"


@pytest.fixture
def stream():
    return io.BytesIO()


@pytest.fixture
def controller(qapp, stream, fake_runner):
    worker = PollWorker(runner=fake_runner())
    return Controller(AppConfig(), ShapingCoordinator(stream), worker=worker, interface="wlan0")


def _sent(stream):
    return [decode(l) for l in stream.getvalue().decode().splitlines()]


def test_rows_follow_socket_snapshots(controller):
    controller.on_sockets({"firefox": [Connection("a", "1", "b", "2")]})
    row = controller.program_rows["firefox"]
    row.toggle(True)
    controller.on_sockets({"curl": [Connection("a", "3", "b", "4")]})
    # a program that went quiet keeps its row so its limit can still be lifted
    assert set(controller.program_rows) == {"firefox", "curl"}
    assert controller.program_rows["firefox"] is row


def test_requested_interface_is_selected_once(controller, stream):
    ifaces = [Interface("eth0"), Interface("wlan0"), Interface("ifb0")]
    controller.on_interfaces(ifaces)
    controller.on_interfaces(ifaces)
    assert controller.chooser.options == ["eth0", "wlan0"]
    assert _sent(stream) == [InterfaceSelection("wlan0")]


def test_missing_interface_sends_nothing(controller, stream):
    controller.on_interfaces([Interface("eth0")])
    assert stream.getvalue() == b""


def test_program_speed_labels(controller):
    controller.on_sockets({"firefox": [], "curl": []})
    labels = controller.update_program_speeds({"firefox": SpeedSample(1, 2)})
    assert labels["curl"] == "Down: 0.00 KB/sec Up: 0.00 KB/sec"


def test_program_row_toggle_reaches_backend(controller, stream):
    controller.on_sockets({"firefox": [Connection("a", "1", "b", "2")]})
    controller.program_rows["firefox"].toggle(True)
    assert _sent(stream) == [ProgramLimit("firefox", "100Kbps", "100Kbps")]


def test_parser():
    args = build_parser().parse_args(["--advanced", "--interface", "eth0", "-v"])
    assert args.advanced and args.verbose
    assert args.interface == "eth0"


def test_ticks_while_polling_are_skipped(qapp, stream, slow_runner):
    runner = slow_runner({SS_COMMAND: SS_OUTPUT, IFSTAT_COMMAND: IFSTAT_OUTPUT}, delay=0.1)
    controller = Controller(AppConfig(), ShapingCoordinator(stream), worker=PollWorker(runner=runner))
    for _ in range(6):
        controller._schedule_poll()
    QtCore.QThreadPool.globalInstance().waitForDone()

    assert runner.max_running == 1
    assert len(runner.calls) == 2

    # once the finished poll is reported back, the next tick polls again
    for _ in range(100):
        qapp.processEvents()
        if not controller._polling:
            break
        time.sleep(0.01)
    assert not controller._polling
    controller._schedule_poll()
    QtCore.QThreadPool.globalInstance().waitForDone()
    assert len(runner.calls) == 4


def test_backend_reports_reach_labels(qapp, stream):
    reader = BackendReader(io.BytesIO(
        b'{"ProgramSpeeds": {"firefox": [1.5, 12]}}\n'
        b'{"GlobalSpeed": [3, 40]}\n'
    ))
    controller = Controller(AppConfig(), ShapingCoordinator(stream), reader=reader)
    controller.on_sockets({"firefox": [], "curl": []})

    reader.run()

    assert controller.program_labels == {
        "firefox": "Down: 12.00 KB/sec Up: 1.50 KB/sec",
        "curl": "Down: 0.00 KB/sec Up: 0.00 KB/sec",
    }
    assert controller.global_speed_label == "Down: 40.00 KB/sec Up: 3.00 KB/sec"


def test_missing_interface_is_reported_once(controller, caplog):
    with caplog.at_level(logging.WARNING, logger="shapedesk.app"):
        for _ in range(3):
            controller.on_interfaces([Interface("eth0")])
    assert len([r for r in caplog.records if "wlan0" in r.getMessage()]) == 1


def test_missing_backend_is_a_missing_tool():
    with pytest.raises(ToolMissing) as ei:
        launch_backend("definitely-not-a-shaping-backend --serve")
    assert ei.value.tool == "definitely-not-a-shaping-backend"
    assert "backend_command" in str(ei.value)


def test_main_exits_when_backend_is_missing(tmp_path, monkeypatch, capsys):
    cfg_path = tmp_path / "config.json"
    save_config(AppConfig(backend_command="definitely-not-a-shaping-backend"), cfg_path)
    monkeypatch.setattr(app, "check_required_tools", lambda: None)

    with pytest.raises(SystemExit) as ei:
        app.main(["--config", str(cfg_path)])
    assert ei.value.code == 1
    assert "definitely-not-a-shaping-backend" in capsys.readouterr().err
