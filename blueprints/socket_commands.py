"""
AutoCast Core - Socket.IO command channel
Event: 'command' with {"type": <CommandType>, "data": {...}}
Dependencies: socketio, sessions, retry_controller, discovery, get_setting

Replies go only to the requesting client:
    pong, command_result, cast_status, error
Long-running commands run as background tasks so the socket thread
is never held by a device or a retry backoff.
"""

from enum import Enum
import logging

from flask import request
from flask_socketio import emit

from core.cast.errors import CastError

logger = logging.getLogger(__name__)

_socketio = None
_sessions = None
_retry = None
_discovery = None
_get_setting = None


class CommandType(Enum):
    """Inbound command kinds."""
    PING = "ping"
    MANUAL_CAST = "manual_cast"
    STOP_CAST = "stop_cast"
    GET_STATUS = "get_status"
    SCAN_DEVICES = "scan_devices"
    RETRY_CAST = "retry_cast"


BACKGROUND_COMMANDS = frozenset({
    CommandType.MANUAL_CAST, CommandType.STOP_CAST,
    CommandType.SCAN_DEVICES, CommandType.RETRY_CAST,
})


def _ping(data):
    return 'pong', {}


def _manual_cast(data):
    status = _sessions.start_cast(data.get('itemId') or data.get('videoId'),
                                  data.get('deviceId'), data.get('scheduleId'),
                                  data.get('itemTitle'))
    return 'command_result', {"command": CommandType.MANUAL_CAST.value, "success": True, **status}


def _stop_cast(data):
    result = _sessions.stop_cast(reason=data.get('reason') or 'manual')
    return 'command_result', {"command": CommandType.STOP_CAST.value, "success": True, **result}


def _get_status(data):
    return 'cast_status', _sessions.get_status()


def _scan_devices(data):
    timeout = float(data.get('timeout', _get_setting('discovery', 'timeout', 5.0)))
    found = _discovery.discover(timeout=timeout)
    return 'command_result', {"command": CommandType.SCAN_DEVICES.value, "success": True,
                              "devices": [d.to_dict() for d in found]}


def _retry_cast(data):
    result = _retry.retry_last_attempt(
        max_retries=data.get('maxRetries', _get_setting('retry', 'maxRetries', 3)),
        backoff_delay=data.get('backoffSeconds', _get_setting('retry', 'backoffSeconds', 5.0)),
    )
    return 'command_result', {"command": CommandType.RETRY_CAST.value, "success": True, **result}


HANDLERS = {
    CommandType.PING: _ping,
    CommandType.MANUAL_CAST: _manual_cast,
    CommandType.STOP_CAST: _stop_cast,
    CommandType.GET_STATUS: _get_status,
    CommandType.SCAN_DEVICES: _scan_devices,
    CommandType.RETRY_CAST: _retry_cast,
}

_unhandled = set(CommandType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"Commands without a handler: {sorted(c.value for c in _unhandled)}")


def parse_command(message):
    """
    Split an inbound message into (CommandType, data).

    Returns (None, error text) for malformed or unknown commands.
    """
    if not isinstance(message, dict):
        return None, "Malformed command"
    raw = message.get('type')
    try:
        command = CommandType(raw)
    except ValueError:
        return None, f"Unknown command type: {raw}"
    data = message.get('data') or {}
    if not isinstance(data, dict):
        return None, "Command data must be an object"
    return command, data


def dispatch(command, data):
    """Run one command. Returns the (event, payload) reply."""
    try:
        return HANDLERS[command](data)
    except CastError as e:
        return 'error', {"command": command.value, "error": str(e)}
    except Exception as e:
        logger.error(f"Command {command.value} failed: {e}", exc_info=True)
        return 'error', {"command": command.value, "error": str(e)}


def _run_in_background(sid, command, data):
    event, payload = dispatch(command, data)
    _socketio.emit(event, payload, to=sid)


def handle_connect():
    logger.info("WebSocket client connected")
    emit('cast_status', _sessions.get_status())


def handle_disconnect(*args):
    logger.info("WebSocket client disconnected")


def handle_command(message):
    command, data = parse_command(message)
    if command is None:
        emit('error', {"error": data})
        return
    logger.debug(f"Command received: {command.value}")
    if command in BACKGROUND_COMMANDS:
        _socketio.start_background_task(_run_in_background, request.sid, command, data)
        return
    event, payload = dispatch(command, data)
    emit(event, payload)


def init_app(socketio, sessions, retry_controller, discovery, get_setting):
    """Wire dependencies and register the Socket.IO handlers."""
    global _socketio, _sessions, _retry, _discovery, _get_setting
    _socketio = socketio
    _sessions = sessions
    _retry = retry_controller
    _discovery = discovery
    _get_setting = get_setting

    socketio.on_event('connect', handle_connect)
    socketio.on_event('disconnect', handle_disconnect)
    socketio.on_event('command', handle_command)
