"""
Job streaming

Exactly one line is in flight: the next line is only sent once grbl has
answered the previous one with ok or error.
"""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from grbl import GrblError
from rpc import GrblRPCError, JobStateError, error_notification, notification

logger = logging.getLogger('streamer')


def now_ms() -> int:
    return int(time.time() * 1000)


class JobState(Enum):
    IDLE = 'idle'
    LOADED = 'loaded'
    STREAMING = 'streaming'
    CANCELING = 'canceling'


@dataclass
class Job:
    name: str
    remain: Deque[str]
    total: int
    sent: List[str] = field(default_factory=list)
    created_time: int = field(default_factory=now_ms)
    started_time: Optional[int] = None
    cancelled: bool = False

    @classmethod
    def from_program(cls, name: str, program: str) -> 'Job':
        lines = re.split(r'\r\n|\r|\n', program)
        return cls(name=name, remain=deque(lines), total=len(lines))

    def next_line(self) -> str:
        line = self.remain.popleft()
        self.sent.append(line)
        return line

    def cancel(self):
        self.cancelled = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'sent': list(self.sent),
            'remain': list(self.remain),
            'total': self.total,
            'createdTime': self.created_time,
            'startedTime': self.started_time,
        }


class JobStreamer:
    """Holds at most one job and streams it to the device."""

    def __init__(self, send_line: Callable[[str], Awaitable[Any]]):
        self.send_line = send_line
        self.job: Optional[Job] = None
        self.broadcast_callback: Optional[Callable[[Dict[str, Any]], None]] = None
        self.stream_task: Optional[asyncio.Task] = None
        self._streaming_job: Optional[Job] = None

    @property
    def state(self) -> JobState:
        streaming = self._streaming_job
        if streaming is not None and streaming.cancelled:
            return JobState.CANCELING
        if self.job is None:
            return JobState.IDLE
        if self.job is streaming:
            return JobState.STREAMING
        return JobState.LOADED

    def _broadcast(self, message: Dict[str, Any]):
        if self.broadcast_callback:
            self.broadcast_callback(message)

    def snapshot(self) -> Dict[str, Any]:
        return {
            'type': 'gcode',
            'gcode': self.job.to_dict() if self.job else None,
        }

    def upload(self, name: str, program: str) -> Job:
        """Load a job, replacing (and stopping) any current one."""
        if self.job is not None:
            self.job.cancel()
        self.job = Job.from_program(name, program)
        logger.info('New gcode uploaded: %s, %d lines', name, self.job.total)
        self._broadcast(notification(self.snapshot()))
        return self.job

    def start(self):
        job = self.job
        if job is None:
            raise JobStateError('No gcode loaded')
        if job.started_time is not None:
            raise JobStateError('Gcode already started')

        job.started_time = now_ms()
        self._broadcast(notification({'type': 'gcode.start', 'time': job.started_time}))
        logger.info('Started %s', job.name)
        self.stream_task = asyncio.create_task(self._stream(job))

    def clear(self):
        if self.job is not None:
            self.job.cancel()
            logger.info('Cleared %s', self.job.name)
        self.job = None
        self._broadcast(notification(self.snapshot()))

    async def _stream(self, job: Job):
        """Send lines one at a time until the job is done or cancelled."""
        self._streaming_job = job
        try:
            while True:
                if job.cancelled:
                    logger.info('Stopped %s after %d of %d lines', job.name, len(job.sent), job.total)
                    return

                if not job.remain:
                    if self.job is job:
                        self.job = None
                    logger.info('Completed %s', job.name)
                    self._broadcast(notification({'type': 'gcode.done'}))
                    return

                line = job.next_line()
                self._broadcast(notification({'type': 'gcode.progress', 'gcode': line}))
                try:
                    await self.send_line(line)
                except GrblError as e:
                    if job.cancelled:
                        # a handshake or upload already replaced this job
                        continue
                    # Reported, but the job keeps going
                    logger.warning('Error on sending gcode %r: %s', line, e)
                    self._broadcast(error_notification(GrblRPCError(str(e))))
        finally:
            if self._streaming_job is job:
                self._streaming_job = None
