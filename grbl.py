"""
GRBL device link

Owns the serial port, turns GRBL 1.1 output lines into events and
serializes commands so only one is ever waiting for ok/error.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import serial

from config import DEFAULT_BAUD_RATE, STATUS_POLL_INTERVAL

logger = logging.getLogger('grbl')

STARTUP_RE = re.compile(r"^Grbl (\S+) \[.*\]$")
SETTING_RE = re.compile(r'^(\$\d+)=(\S+)')

# Realtime control codes
RT_STATUS = '?'
RT_FEED_HOLD = '!'
RT_CYCLE_START = '~'
RT_SOFT_RESET = '\x18'

EVENTS = ('startup', 'statuschange', 'alarm', 'feedback', 'error')


class GrblError(Exception):
    """Command rejected by grbl, or the link is unusable."""


# ============================================================
# MACHINE STATUS
# ============================================================

def _axes(text: str) -> Dict[str, float]:
    return {axis: float(value) for axis, value in zip('xyza', text.split(','))}


@dataclass
class MachineStatus:
    state: str = 'Unknown'
    mpos: Dict[str, float] = field(default_factory=dict)
    wpos: Dict[str, float] = field(default_factory=dict)
    wco: Dict[str, float] = field(default_factory=dict)
    feed_rate: float = 0
    spindle_speed: float = 0
    feed_override: int = 100
    rapid_override: int = 100
    spindle_override: int = 100
    buffer: Optional[List[int]] = None
    line: Optional[int] = None
    pins: str = ''

    def update(self, report: str):
        """Apply a `<...>` status report."""
        parts = report[1:-1].split('|')
        self.state = parts[0]
        self.pins = ''

        mpos = wpos = None
        for part in parts[1:]:
            key, _, value = part.partition(':')
            if key == 'MPos':
                mpos = _axes(value)
            elif key == 'WPos':
                wpos = _axes(value)
            elif key == 'WCO':
                # Sent only every few reports, keep the last one
                self.wco = _axes(value)
            elif key == 'FS':
                fs = value.split(',')
                self.feed_rate = float(fs[0])
                self.spindle_speed = float(fs[1]) if len(fs) > 1 else 0
            elif key == 'F':
                self.feed_rate = float(value)
            elif key == 'Ov':
                ov = [int(v) for v in value.split(',')]
                self.feed_override, self.rapid_override, self.spindle_override = (ov + [100, 100, 100])[:3]
            elif key == 'Bf':
                self.buffer = [int(v) for v in value.split(',')]
            elif key == 'Ln':
                self.line = int(value)
            elif key == 'Pn':
                self.pins = value

        # GRBL reports either MPos or WPos, derive the other from WCO
        if mpos is not None:
            self.mpos = mpos
            self.wpos = {a: v - self.wco.get(a, 0) for a, v in mpos.items()}
        elif wpos is not None:
            self.wpos = wpos
            self.mpos = {a: v + self.wco.get(a, 0) for a, v in wpos.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state,
            'mpos': dict(self.mpos),
            'wpos': dict(self.wpos),
            'feed_rate': self.feed_rate,
            'spindle_speed': self.spindle_speed,
            'feed_override': self.feed_override,
            'rapid_override': self.rapid_override,
            'spindle_override': self.spindle_override,
            'buffer': self.buffer,
            'line': self.line,
            'pins': self.pins,
        }


# ============================================================
# GRBL CONNECTION
# ============================================================

class Grbl:
    """Serial connection to one GRBL controller."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD_RATE,
                 command_timeout: Optional[float] = None,
                 poll_interval: float = STATUS_POLL_INTERVAL):
        self.port = port
        self.baud = baud
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval
        self.ser: Optional[serial.Serial] = None
        self.connected: bool = False
        self.version: str = ''
        self.status: MachineStatus = MachineStatus()
        self.last_alarm: Optional[str] = None
        self.last_feedback: Optional[str] = None
        self.read_task: Optional[asyncio.Task] = None
        self.poll_task: Optional[asyncio.Task] = None
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in EVENTS}
        self._command_lock = asyncio.Lock()
        self._pending: Optional[asyncio.Future] = None
        self._pending_lines: List[str] = []
        self._last_status: Optional[Dict[str, Any]] = None

    def on(self, event: str, callback: Callable):
        """Register a listener for one of EVENTS."""
        if event not in self._listeners:
            raise ValueError(f'unknown grbl event: {event}')
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception('%s listener failed', event)

    async def open(self):
        """Open the serial port using DTR-safe settings."""
        try:
            self.ser = serial.Serial()
            self.ser.port = self.port
            self.ser.baudrate = self.baud
            self.ser.timeout = 0.1
            self.ser.dsrdtr = False  # Disable DTR/DSR flow control
            self.ser.open()
            self.ser.dtr = False     # Explicitly hold DTR low after opening
        except (serial.SerialException, OSError) as e:
            self.ser = None
            self._fail(f'Cannot open {self.port}: {e}')
            return

        self.connected = True
        self.read_task = asyncio.create_task(self._read_loop())
        self.poll_task = asyncio.create_task(self._poll_status())
        logger.info('Opened %s at %d baud', self.port, self.baud)

    async def close(self):
        """Close the serial port; a waiting command fails."""
        self.connected = False
        current = asyncio.current_task()
        for task in (self.read_task, self.poll_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.read_task = None
        self.poll_task = None
        self._close_port()
        self._reject_pending(GrblError('link closed'))
        logger.info('Closed %s', self.port)

    def _close_port(self):
        if self.ser is not None:
            try:
                if self.ser.is_open:
                    self.ser.close()
            except (serial.SerialException, OSError) as e:
                logger.debug('Close failed: %s', e)
        self.ser = None

    def _fail(self, message: str):
        """Mark the link unusable and report it."""
        was_open = self.ser is not None
        self.connected = False
        if was_open:
            self._close_port()
        self._reject_pending(GrblError(message))
        logger.error('Link failed: %s', message)
        self._emit('error', message)

    # ------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------

    async def _read_loop(self):
        """Async loop to read serial data."""
        loop = asyncio.get_running_loop()
        buffer = ''

        while self.connected and self.ser:
            ser = self.ser
            try:
                data = await loop.run_in_executor(None, ser.read, 256)
            except (serial.SerialException, OSError, TypeError) as e:
                # TypeError: pyserial reading a port closed under it
                if self.connected:
                    self._fail(f'Read error: {e}')
                return

            if not data:
                continue
            buffer += data.decode('utf-8', errors='ignore')
            while '\n' in buffer:
                line, buffer = buffer.split('\n', 1)
                line = line.strip()
                if line:
                    self.handle_line(line)

    def handle_line(self, line: str):
        """Process a line received from GRBL."""
        logger.debug('< %s', line)

        if line.startswith('<') and line.endswith('>'):
            try:
                self.status.update(line)
            except ValueError:
                logger.warning('Malformed status report: %s', line)
                return
            snapshot = self.status.to_dict()
            if snapshot != self._last_status:
                self._last_status = snapshot
                self._emit('statuschange', snapshot)
            return

        if line == 'ok':
            self._resolve_pending()
            return

        if line.startswith('error:'):
            self._reject_pending(GrblError(line))
            return

        if line.startswith('ALARM:'):
            self.last_alarm = line
            self.status.state = 'Alarm'
            self._emit('alarm', line)
            return

        if line.startswith('[MSG:') and line.endswith(']'):
            self.last_feedback = line[5:-1]
            self._emit('feedback', self.last_feedback)
            return

        match = STARTUP_RE.match(line)
        if match:
            self.version = match.group(1)
            self.status = MachineStatus()
            self._last_status = None
            self.last_alarm = None
            self.last_feedback = None
            # A reset drops whatever grbl was executing
            self._reject_pending(GrblError('grbl was reset'))
            logger.info('Controller: %s', line)
            self._emit('startup', {'version': self.version, 'message': line})
            return

        if self._pending is not None:
            self._pending_lines.append(line)
        else:
            logger.debug('Unsolicited line: %s', line)

    def _resolve_pending(self):
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(list(self._pending_lines))

    def _reject_pending(self, error: GrblError):
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(error)

    async def _poll_status(self):
        """Periodically send status query."""
        while self.connected:
            self.realtime_command(RT_STATUS)
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------

    def _write(self, data: bytes):
        if not self.connected or self.ser is None:
            raise GrblError('not connected')
        try:
            self.ser.write(data)
        except (serial.SerialException, OSError) as e:
            self._fail(f'Write error: {e}')
            raise GrblError(str(e)) from e

    async def command(self, line: str) -> List[str]:
        """Send a line and wait for ok; returns the lines grbl printed before it."""
        if '\n' in line.strip() or '\r' in line.strip():
            # every line grbl sees answers with its own ok, which would
            # resolve the next caller's command
            raise GrblError('command must be a single line')
        async with self._command_lock:
            future = asyncio.get_running_loop().create_future()
            self._pending = future
            self._pending_lines = []
            try:
                logger.debug('> %s', line.strip())
                self._write((line.strip() + '\n').encode('utf-8'))
                if self.command_timeout is None:
                    return await future
                try:
                    return await asyncio.wait_for(future, self.command_timeout)
                except asyncio.TimeoutError:
                    self._fail(f'No response to {line.strip()!r} within {self.command_timeout}s')
                    raise GrblError('command timed out')
            finally:
                if future.done() and not future.cancelled():
                    future.exception()  # mark retrieved when a write failed first
                self._pending = None
                self._pending_lines = []

    def realtime_command(self, char: str):
        """Send a realtime control code (no newline, no response expected)."""
        try:
            self._write(char.encode('latin-1'))
        except GrblError as e:
            logger.debug('Realtime %r dropped: %s', char, e)

    def reset(self):
        self.realtime_command(RT_SOFT_RESET)

    async def get_config(self) -> Dict[str, str]:
        """Read the `$$` settings."""
        settings = {}
        for line in await self.command('$$'):
            match = SETTING_RE.match(line)
            if match:
                settings[match.group(1)] = match.group(2)
        return settings
