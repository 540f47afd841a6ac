"""
JSON-RPC over WebSocket

Request:      {"method": "...", "params": {...}, "id": 1}
Response:     {"id": 1, "result": ...}  or  {"id": 1, "error": {"code": ..., "message": ...}}
Notification: same shape as a response with "id": null
"""

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger('rpc')

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
GRBL_ERROR = -32000
NOT_IDLE = -32001
JOB_STATE_ERROR = -32002


# ============================================================
# ERRORS
# ============================================================

class RPCError(Exception):
    """Error returned to the client as the response's `error` member."""

    code = INTERNAL_ERROR
    message = 'Internal error'

    def __init__(self, data: Any = None, code: Optional[int] = None, message: Optional[str] = None):
        super().__init__(message or self.message)
        if code is not None:
            self.code = code
        if message is not None:
            self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        error = {'code': self.code, 'message': self.message}
        if self.data is not None:
            error['data'] = self.data
        return error


class ParseError(RPCError):
    code = PARSE_ERROR
    message = 'Parse Error'


class InvalidRequest(RPCError):
    code = INVALID_REQUEST
    message = 'Invalid Request'


class MethodNotFound(RPCError):
    code = METHOD_NOT_FOUND
    message = 'Method not found'


class InvalidParams(RPCError):
    code = INVALID_PARAMS
    message = 'Invalid params'


class InternalError(RPCError):
    pass


class GrblRPCError(RPCError):
    code = GRBL_ERROR
    message = 'Error on grbl'


class NotIdleError(RPCError):
    # Reserved: uploads are not gated on machine state
    code = NOT_IDLE
    message = 'Grbl state is not idle'


class JobStateError(RPCError):
    code = JOB_STATE_ERROR
    message = 'Job state conflict'


# ============================================================
# MESSAGES
# ============================================================

def response(request_id: Any, result: Any = None) -> Dict[str, Any]:
    return {'id': request_id, 'result': result}


def error_response(request_id: Any, error: RPCError) -> Dict[str, Any]:
    return {'id': request_id, 'error': error.to_dict()}


def notification(result: Dict[str, Any]) -> Dict[str, Any]:
    """Server-initiated message, not tied to a request."""
    return response(None, result)


def error_notification(error: RPCError) -> Dict[str, Any]:
    return error_response(None, error)


# ============================================================
# DISPATCHER
# ============================================================

Method = Callable[[Dict[str, Any]], Awaitable[Any]]


class Dispatcher:
    """Routes requests through a fixed method table and replies to the caller only."""

    def __init__(self, methods: Dict[str, Method], unicast: Callable[[Any, Dict[str, Any]], None]):
        for name, method in methods.items():
            if not isinstance(name, str):
                raise TypeError(f'method name must be str, got {name!r}')
            if not inspect.iscoroutinefunction(method):
                raise TypeError(f'method {name!r} must be a coroutine function')
        self.methods = dict(methods)
        self.unicast = unicast

    async def dispatch(self, session, message: str) -> Dict[str, Any]:
        """Handle one inbound message; the response is unicast and returned."""
        reply = await self._process(message)
        self.unicast(session, reply)
        return reply

    async def _process(self, message: str) -> Dict[str, Any]:
        try:
            req = json.loads(message)
        except (ValueError, RecursionError, TypeError):
            # JSONDecodeError is a ValueError; so are over-long integers
            logger.debug('Unparsable request: %.200s', message)
            return error_response(None, ParseError())
        if not isinstance(req, dict):
            return error_response(None, ParseError())

        request_id = req.get('id')
        method_name = req.get('method')
        try:
            method = self.methods.get(method_name) if isinstance(method_name, str) else None
            if method is None:
                logger.warning('Method not found: %r', method_name)
                return error_response(request_id, MethodNotFound(data=method_name))

            logger.debug('Request %s id=%r', method_name, request_id)
            params = req.get('params')
            result = await method(params if params is not None else {})
            return response(request_id, result)
        except RPCError as e:
            logger.info('%s failed: %s %s', method_name, e.code, e.message)
            return error_response(request_id, e)
        except Exception:
            logger.exception('Error handling %s', method_name)
            return error_response(request_id, InternalError())
