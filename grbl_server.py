#!/usr/bin/env python3
"""
GRBL WebSocket Server

Single Python server that:
1. Owns the serial port and reopens it whenever the link fails
2. Serves the browser UI and /config over HTTP
3. Provides a JSON-RPC API over WebSocket on the same port
4. Streams uploaded G-code one acknowledged line at a time
5. Broadcasts machine status, alarms and job progress to every client

Dependencies: pip install pyserial websockets

Usage: python3 grbl_server.py [--port 8000] [--serial /dev/ttyACM0]
"""

import argparse
import asyncio
import json
import logging
import mimetypes
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
from urllib.parse import unquote, urlsplit

import websockets
from websockets.asyncio.server import ServerConnection, serve
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

import config
from config import ServerConfig
from grbl import RT_CYCLE_START, RT_FEED_HOLD, Grbl, GrblError
from link_supervisor import LinkSupervisor
from rpc import Dispatcher, GrblRPCError, InvalidParams, notification
from sessions import Session, SessionRegistry
from streamer import JobStreamer

logger = logging.getLogger('server')


def _param(params: Any, key: str, kind: type = str):
    if not isinstance(params, dict) or not isinstance(params.get(key), kind):
        raise InvalidParams(f'{key!r} must be a {kind.__name__}')
    return params[key]


def http_response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
    headers = Headers([
        ('Content-Type', content_type),
        ('Content-Length', str(len(body))),
        ('Connection', 'close'),
    ])
    return Response(status.value, status.phrase, headers, body)


class GrblServer:
    """Bridges WebSocket clients to one grbl controller."""

    def __init__(self, server_config: ServerConfig, link_factory=None):
        self.config = server_config
        self.sessions = SessionRegistry(self.initial_messages)
        self.supervisor = LinkSupervisor(link_factory or self._make_link, server_config.reopen_delay)
        self.streamer = JobStreamer(self.supervisor.command)
        self._tasks: Set[asyncio.Task] = set()

        # Set up broadcast callbacks
        self.supervisor.broadcast_callback = self.sessions.broadcast
        self.supervisor.startup_callback = self.streamer.clear
        self.streamer.broadcast_callback = self.sessions.broadcast

        self.dispatcher = Dispatcher({
            'upload': self.service_upload,
            'job': self.service_job,
            'gcode': self.service_job,
            'config': self.service_config,
            'command': self.service_command,
            'reset': self.service_reset,
            'resume': self.service_resume,
            'pause': self.service_pause,
        }, unicast=self.sessions.unicast)

    def _make_link(self) -> Grbl:
        return Grbl(
            self.config.serial_port,
            self.config.serial_baud,
            command_timeout=self.config.command_timeout,
            poll_interval=self.config.status_poll_interval,
        )

    def initial_messages(self) -> List[Dict[str, Any]]:
        """Snapshot sent to a client as it connects."""
        messages = [notification(self.supervisor.init_message())]
        if self.streamer.job is not None:
            messages.append(notification(self.streamer.snapshot()))
        return messages

    # ============================================================
    # RPC SERVICES
    # ============================================================

    async def service_upload(self, params):
        name = params.get('name') if isinstance(params, dict) else None
        program = _param(params, 'gcode')
        self.streamer.upload(str(name or 'untitled'), program)

    async def service_job(self, params):
        if not isinstance(params, dict):
            raise InvalidParams('params must be an object')
        if params.get('execute'):
            self.streamer.start()
        elif params.get('clear'):
            self.streamer.clear()
        else:
            return self.streamer.snapshot()

    async def service_config(self, params):
        try:
            return await self.supervisor.get_config()
        except GrblError as e:
            raise GrblRPCError(str(e))

    async def service_command(self, params):
        command = _param(params, 'command')
        if '\n' in command.strip() or '\r' in command.strip():
            raise InvalidParams('command must be a single line')
        try:
            if command.strip() == '$$':
                return await self.supervisor.get_config()
            return await self.supervisor.command(command)
        except GrblError as e:
            raise GrblRPCError(str(e))

    async def service_reset(self, params):
        self.supervisor.reset()

    async def service_resume(self, params):
        self.supervisor.realtime_command(RT_CYCLE_START)

    async def service_pause(self, params):
        self.supervisor.realtime_command(RT_FEED_HOLD)

    # ============================================================
    # WEBSOCKET
    # ============================================================

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_client(self, connection: ServerConnection):
        """Handle WebSocket client connection."""
        remote = connection.remote_address[0] if connection.remote_address else '?'
        session = Session(connection, remote)
        self.sessions.admit(session)

        try:
            async for message in connection:
                if isinstance(message, bytes):
                    logger.debug('Ignoring binary frame from %s', remote)
                    continue
                logger.debug('Req from %s: %.200s', remote, message)
                # Each request runs on its own so a slow command does not block the next
                self._spawn(self.dispatcher.dispatch(session, message))
        except websockets.ConnectionClosedError as e:
            logger.info('Peer %s closed with error: %s', remote, e)
        finally:
            self.sessions.evict(session)
            await session.close()

    # ============================================================
    # HTTP
    # ============================================================

    async def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Filter WebSocket origins and answer plain HTTP requests."""
        if request.headers.get('Upgrade', '').lower() == 'websocket':
            remote = connection.remote_address[0] if connection.remote_address else ''
            if not self.config.is_allowed_address(remote):
                logger.warning('Connection from origin %s rejected.', remote)
                return http_response(HTTPStatus.FORBIDDEN, b'Forbidden\n', 'text/plain')
            return None

        path = unquote(urlsplit(request.path).path)
        if path == '/config':
            body = json.dumps(self.config.to_dict()).encode()
            return http_response(HTTPStatus.OK, body, 'application/json')
        return await self.serve_static(path)

    async def serve_static(self, path: str) -> Response:
        root = Path(self.config.assets_dir).resolve()
        relative = path.lstrip('/') or 'index.html'
        target = (root / relative).resolve()
        if target.is_dir():
            target = target / 'index.html'
        if root not in target.parents or not target.is_file():
            return http_response(HTTPStatus.NOT_FOUND, b'Not Found\n', 'text/plain')

        content_type = mimetypes.guess_type(target.name)[0] or 'application/octet-stream'
        body = await asyncio.get_running_loop().run_in_executor(None, target.read_bytes)
        return http_response(HTTPStatus.OK, body, content_type)

    async def start(self):
        """Start the server."""
        logger.info('Launching with this config: %s', self.config)
        async with serve(
            self.handle_client,
            self.config.host,
            self.config.server_port,
            process_request=self.process_request,
            max_size=config.MAX_MESSAGE_SIZE,
        ):
            logger.info('Running on http://%s:%d', self.config.host, self.config.server_port)
            await self.supervisor.start()
            try:
                await asyncio.Future()  # Run forever
            finally:
                await self.supervisor.stop()

# ============================================================
# MAIN
# ============================================================

def main():
    parser = argparse.ArgumentParser(description='GRBL WebSocket Server')
    parser.add_argument('--port', type=int, default=config.DEFAULT_HTTP_PORT, help='HTTP/WS port')
    parser.add_argument('--host', default=config.DEFAULT_HOST, help='Listen address')
    parser.add_argument('--serial', default=config.DEFAULT_SERIAL_PORT, help='Serial port')
    parser.add_argument('--baud', type=int, default=config.DEFAULT_BAUD_RATE, help='Serial baud rate')
    parser.add_argument('--assets', default=config.ASSETS_DIR, help='Static files directory')
    parser.add_argument('--reopen-delay', type=float, default=config.REOPEN_DELAY,
                        help='Seconds to wait before reopening a failed link')
    parser.add_argument('--command-timeout', type=float, default=config.COMMAND_TIMEOUT,
                        help='Treat the link as failed when a command gets no answer in time')
    parser.add_argument('--log-level', default='INFO', help='Logging level')
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format='[%(name)s] %(message)s')

    server = GrblServer(ServerConfig(
        serial_port=args.serial,
        serial_baud=args.baud,
        server_port=args.port,
        host=args.host,
        assets_dir=args.assets,
        reopen_delay=args.reopen_delay,
        command_timeout=args.command_timeout,
    ))

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info('Shutting down...')

if __name__ == '__main__':
    main()
