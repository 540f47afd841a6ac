"""
Link supervisor

Keeps the grbl link open: on any link error it waits a fixed delay and
opens a fresh connection, forever. Also keeps the device snapshot that
late-joining clients are initialized with.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from config import REOPEN_DELAY
from grbl import Grbl, GrblError, MachineStatus
from rpc import GrblRPCError, error_notification, notification

logger = logging.getLogger('link')


class LinkSupervisor:
    """Owns the single Grbl instance and reopens it after failures."""

    def __init__(self, link_factory: Callable[[], Grbl], reopen_delay: float = REOPEN_DELAY):
        self.link_factory = link_factory
        self.reopen_delay = reopen_delay
        self.grbl: Optional[Grbl] = None
        self.broadcast_callback: Optional[Callable[[Dict[str, Any]], None]] = None
        self.startup_callback: Optional[Callable[[], None]] = None

        # Device snapshot, reset on every grbl startup
        self.status: Dict[str, Any] = MachineStatus().to_dict()
        self.last_alarm: Optional[str] = None
        self.last_feedback: Optional[str] = None
        self.device_config: Dict[str, str] = {}

        self.reopen_count: int = 0
        self._reopen_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stopped = False

    def _broadcast(self, message: Dict[str, Any]):
        if self.broadcast_callback:
            self.broadcast_callback(message)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self):
        self._stopped = False
        await self._open()

    async def stop(self):
        self._stopped = True
        if self._reopen_task is not None:
            self._reopen_task.cancel()
            self._reopen_task = None
        for task in list(self._tasks):
            task.cancel()
        if self.grbl is not None:
            await self.grbl.close()
            self.grbl = None

    async def _open(self):
        grbl = self.link_factory()
        grbl.on('startup', self._on_startup)
        grbl.on('statuschange', self._on_status)
        grbl.on('alarm', self._on_alarm)
        grbl.on('feedback', self._on_feedback)
        grbl.on('error', lambda message: self._on_error(grbl, message))
        self.grbl = grbl
        await grbl.open()

    # ------------------------------------------------------------
    # Failure and recovery
    # ------------------------------------------------------------

    def _on_error(self, grbl: Grbl, message: str):
        if grbl is not self.grbl:
            return  # stale link, already replaced
        logger.error('Error on grbl: %s', message)
        self._broadcast(error_notification(GrblRPCError(message)))
        self._schedule_reopen()

    def _schedule_reopen(self):
        if self._stopped:
            return
        if self._reopen_task is not None and not self._reopen_task.done():
            return
        logger.info('Reopening link in %.1fs', self.reopen_delay)
        self._reopen_task = asyncio.create_task(self._reopen_later())

    async def _reopen_later(self):
        await asyncio.sleep(self.reopen_delay)
        # Cleared first so a failure while opening schedules the next attempt
        self._reopen_task = None
        self.reopen_count += 1
        old = self.grbl
        if old is not None:
            await old.close()
        await self._open()

    # ------------------------------------------------------------
    # Controller events
    # ------------------------------------------------------------

    def _on_startup(self, greeting: Dict[str, Any]):
        logger.info('Grbl %s started', greeting.get('version'))
        self.status = MachineStatus().to_dict()
        self.last_alarm = None
        self.last_feedback = None
        self.device_config = {}
        if self.startup_callback:
            self.startup_callback()
        self._spawn(self._load_config())
        self._broadcast(notification(dict(greeting, type='startup')))
        self._broadcast(notification({'type': 'status', 'status': self.status}))

    async def _load_config(self):
        try:
            self.device_config = await self.get_config()
        except GrblError as e:
            logger.warning('Reading settings failed: %s', e)
            return
        logger.info('Read %d settings', len(self.device_config))

    def _on_status(self, status: Dict[str, Any]):
        self.status = status
        self._broadcast(notification({'type': 'status', 'status': status}))

    def _on_alarm(self, message: str):
        logger.warning('Alarm: %s', message)
        self.last_alarm = message
        self._broadcast(notification({'type': 'alarm', 'message': message}))

    def _on_feedback(self, message: str):
        self.last_feedback = message
        self._broadcast(notification({'type': 'feedback', 'message': message}))

    def init_message(self) -> Dict[str, Any]:
        return {
            'type': 'init',
            'lastAlarm': self.last_alarm,
            'lastFeedback': self.last_feedback,
            'status': self.status,
        }

    # ------------------------------------------------------------
    # Device operations on the current link
    # ------------------------------------------------------------

    def _link(self) -> Grbl:
        if self.grbl is None or not self.grbl.connected:
            raise GrblError('grbl link is not open')
        return self.grbl

    async def command(self, line: str) -> List[str]:
        return await self._link().command(line)

    async def get_config(self) -> Dict[str, str]:
        return await self._link().get_config()

    def realtime_command(self, char: str):
        if self.grbl is not None:
            self.grbl.realtime_command(char)

    def reset(self):
        if self.grbl is not None:
            self.grbl.reset()
