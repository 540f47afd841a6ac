from __future__ import annotations

import asyncio

import pytest
import serial

from grbl import Grbl, GrblError, MachineStatus
from tests.conftest import settle


class FakeSerial:
    def __init__(self, fail_write: bool = False) -> None:
        self.written: list[bytes] = []
        self.fail_write = fail_write
        self.is_open = True

    def write(self, data: bytes) -> int:
        if self.fail_write:
            raise serial.SerialException("device disconnected")
        self.written.append(data)
        return len(data)

    def close(self) -> None:
        self.is_open = False


def _link(**kwargs) -> Grbl:
    link = Grbl("/dev/ttyFAKE", **kwargs)
    link.ser = FakeSerial()
    link.connected = True
    return link


def _events(link: Grbl) -> list[tuple]:
    seen: list[tuple] = []
    for name in ("startup", "statuschange", "alarm", "feedback", "error"):
        link.on(name, lambda *args, name=name: seen.append((name, *args)))
    return seen


def test_status_report_updates_positions():
    status = MachineStatus()
    status.update("<Run|MPos:10.000,5.000,-1.000|Bf:15,128|FS:500,12000|WCO:1.000,1.000,0.000>")

    assert status.state == "Run"
    assert status.mpos == {"x": 10.0, "y": 5.0, "z": -1.0}
    assert status.wpos == {"x": 9.0, "y": 4.0, "z": -1.0}
    assert status.feed_rate == 500.0
    assert status.spindle_speed == 12000.0
    assert status.buffer == [15, 128]

    status.update("<Idle|WPos:0.000,0.000,0.000|FS:0,0|Ov:120,100,80>")
    assert status.state == "Idle"
    assert status.mpos == {"x": 1.0, "y": 1.0, "z": 0.0}
    assert (status.feed_override, status.rapid_override, status.spindle_override) == (120, 100, 80)


def test_statuschange_only_when_status_differs():
    link = _link()
    seen = _events(link)

    link.handle_line("<Idle|MPos:0.000,0.000,0.000|FS:0,0>")
    link.handle_line("<Idle|MPos:0.000,0.000,0.000|FS:0,0>")
    link.handle_line("<Jog|MPos:1.000,0.000,0.000|FS:100,0>")

    assert [e[0] for e in seen] == ["statuschange", "statuschange"]
    assert seen[-1][1]["state"] == "Jog"


def test_alarm_and_feedback_events():
    link = _link()
    seen = _events(link)

    link.handle_line("ALARM:2")
    link.handle_line("[MSG:Reset to continue]")

    assert seen == [("alarm", "ALARM:2"), ("feedback", "Reset to continue")]
    assert link.last_alarm == "ALARM:2"
    assert link.last_feedback == "Reset to continue"
    assert link.status.state == "Alarm"


@pytest.mark.asyncio
async def test_command_resolves_on_ok_with_collected_lines():
    link = _link()
    task = asyncio.create_task(link.command("$#"))
    await settle()

    assert link.ser.written == [b"$#\n"]
    link.handle_line("[G54:0.000,0.000,0.000]")
    link.handle_line("[PRB:0.000,0.000,0.000:0]")
    link.handle_line("ok")

    assert await task == ["[G54:0.000,0.000,0.000]", "[PRB:0.000,0.000,0.000:0]"]


@pytest.mark.asyncio
async def test_command_fails_on_error_line():
    link = _link()
    task = asyncio.create_task(link.command("G5"))
    await settle()
    link.handle_line("error:20")

    with pytest.raises(GrblError, match="error:20"):
        await task


@pytest.mark.asyncio
async def test_commands_are_sent_one_at_a_time():
    link = _link()
    first = asyncio.create_task(link.command("G0 X1"))
    second = asyncio.create_task(link.command("G0 X2"))
    await settle()
    assert link.ser.written == [b"G0 X1\n"]

    link.handle_line("ok")
    await first
    await settle()
    assert link.ser.written == [b"G0 X1\n", b"G0 X2\n"]
    link.handle_line("ok")
    assert await second == []


@pytest.mark.asyncio
@pytest.mark.parametrize("line", ["G0 X1\nG0 X2", "G0 X1\rG0 X2", "$H\r\n$X"])
async def test_multi_line_command_is_rejected_unsent(line):
    link = _link()

    with pytest.raises(GrblError, match="single line"):
        await link.command(line)
    assert link.ser.written == []

    # the next command still owns the next ok
    task = asyncio.create_task(link.command("G0 X3"))
    await settle()
    assert link.ser.written == [b"G0 X3\n"]
    link.handle_line("ok")
    assert await task == []


@pytest.mark.asyncio
async def test_get_config_parses_settings():
    link = _link()
    task = asyncio.create_task(link.get_config())
    await settle()
    for line in ("$0=10", "$1=25", "$100=250.000 (x, step/mm)", "ok"):
        link.handle_line(line)

    assert await task == {"$0": "10", "$1": "25", "$100": "250.000"}


@pytest.mark.asyncio
async def test_startup_resets_snapshot_and_fails_pending_command():
    link = _link()
    seen = _events(link)
    link.handle_line("ALARM:1")
    task = asyncio.create_task(link.command("G1 X5"))
    await settle()

    link.handle_line("Grbl 1.1f ['$' for help]")

    with pytest.raises(GrblError):
        await task
    assert link.version == "1.1f"
    assert link.last_alarm is None
    assert link.status.state == "Unknown"
    assert seen[-1] == ("startup", {"version": "1.1f", "message": "Grbl 1.1f ['$' for help]"})


@pytest.mark.asyncio
async def test_write_failure_is_a_link_error():
    link = _link()
    link.ser = FakeSerial(fail_write=True)
    seen = _events(link)

    with pytest.raises(GrblError):
        await link.command("G0 X1")

    assert link.connected is False
    assert seen[0][0] == "error"


@pytest.mark.asyncio
async def test_command_timeout_escalates_to_link_error():
    link = _link(command_timeout=0.01)
    seen = _events(link)

    with pytest.raises(GrblError, match="timed out"):
        await link.command("G4 P10")

    assert link.connected is False
    assert [e[0] for e in seen] == ["error"]


@pytest.mark.asyncio
async def test_close_fails_pending_command():
    link = _link()
    task = asyncio.create_task(link.command("G0 X1"))
    await settle()
    await link.close()

    with pytest.raises(GrblError, match="link closed"):
        await task


def test_realtime_commands_skip_newline():
    link = _link()
    link.realtime_command("!")
    link.reset()
    assert link.ser.written == [b"!", b"\x18"]


def test_listener_failure_is_isolated(caplog):
    link = _link()

    def broken(message):
        raise RuntimeError("listener bug")

    seen: list[str] = []
    link.on("alarm", broken)
    link.on("alarm", seen.append)
    link.handle_line("ALARM:3")

    assert seen == ["ALARM:3"]
    assert "alarm listener failed" in caplog.text


def test_unknown_event_is_rejected():
    with pytest.raises(ValueError):
        _link().on("statuschanged", print)
