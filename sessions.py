"""
Client sessions

Every session has its own outbound queue drained by a writer task, so
messages reach a client in the order they were queued and a slow or dead
client never holds up the others.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

logger = logging.getLogger('ws')


class SessionState(Enum):
    ACTIVE = 'active'
    CLOSING = 'closing'


class Session:
    """One connected client."""

    def __init__(self, connection, remote_address: str):
        self.connection = connection
        self.remote_address = remote_address
        self.state = SessionState.ACTIVE
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None

    def __repr__(self):
        return f'<Session {self.remote_address} {self.state.value}>'

    def start(self):
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    def send(self, message: Dict[str, Any]):
        """Queue a message; dropped once the session is closing."""
        if self.state is SessionState.ACTIVE:
            self._outbox.put_nowait(json.dumps(message))

    async def _write_loop(self):
        while True:
            data = await self._outbox.get()
            try:
                await self.connection.send(data)
            except websockets.ConnectionClosed:
                self._abandon()
                return
            except Exception as e:
                logger.warning('Send to %s failed: %s', self.remote_address, e)
                self._abandon()
                return
            finally:
                self._outbox.task_done()

    def _abandon(self):
        # The transport's own close signal evicts the session
        self.state = SessionState.CLOSING
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    async def join(self):
        """Wait until everything queued so far has been handed to the transport."""
        await self._outbox.join()

    async def close(self):
        self.state = SessionState.CLOSING
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None


class SessionRegistry:
    """Single owner of the connected session set."""

    def __init__(self, initial_messages: Callable[[], List[Dict[str, Any]]]):
        self.initial_messages = initial_messages
        self._sessions: Set[Session] = set()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session):
        return session in self._sessions

    def admit(self, session: Session):
        """Add a session and queue its init snapshot ahead of any later broadcast."""
        session.start()
        for message in self.initial_messages():
            session.send(message)
        self._sessions.add(session)
        logger.info('Client %s connected (%d total)', session.remote_address, len(self._sessions))

    def evict(self, session: Session) -> bool:
        if session not in self._sessions:
            return False
        self._sessions.discard(session)
        logger.info('Client %s disconnected (%d total)', session.remote_address, len(self._sessions))
        return True

    def broadcast(self, message: Dict[str, Any]):
        """Send a message to every connected session."""
        for session in list(self._sessions):
            try:
                session.send(message)
            except Exception:
                logger.exception('Broadcast to %s failed', session.remote_address)

    def unicast(self, session: Session, message: Dict[str, Any]):
        session.send(message)
