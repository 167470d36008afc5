"""
AutoCast Core - Cast & Devices Blueprint
Routes: /api/cast/*, /api/devices/*, /api/logs, /api/status
Dependencies: sessions, retry_controller, discovery, registry, store,
              scheduler, get_setting, version
"""

from datetime import datetime

from flask import Blueprint, jsonify, request

from core.cast.errors import CastError, ValidationError

cast_bp = Blueprint('cast', __name__)

_sessions = None
_retry = None
_discovery = None
_registry = None
_store = None
_scheduler = None
_get_setting = None
_version = None
_start_time = datetime.now()


def init_app(sessions, retry_controller, discovery, registry, store, scheduler,
             get_setting, version):
    """Initialize blueprint with required dependencies."""
    global _sessions, _retry, _discovery, _registry, _store, _scheduler, _get_setting, _version
    _sessions = sessions
    _retry = retry_controller
    _discovery = discovery
    _registry = registry
    _store = store
    _scheduler = scheduler
    _get_setting = get_setting
    _version = version


@cast_bp.errorhandler(CastError)
def handle_cast_error(e):
    return jsonify({"success": False, "error": str(e)}), e.http_status


def _json_body():
    return request.get_json(silent=True) or {}


def _optional_int(data, *keys):
    for key in keys:
        value = data.get(key)
        if value is None or value == '':
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be an integer")
    return None


# ─────────────────────────────────────────────────────────
# Cast Routes
# ─────────────────────────────────────────────────────────

@cast_bp.route('/api/cast/status', methods=['GET'])
def cast_status():
    """Current session (or idle) plus the last attempt"""
    return jsonify({"success": True, **_sessions.get_status()})


@cast_bp.route('/api/cast/start', methods=['POST'])
def cast_start():
    """Manually start casting an item"""
    data = _json_body()
    item_id = data.get('itemId') or data.get('videoId')
    device_id = _optional_int(data, 'deviceId', 'device_id')
    schedule_id = _optional_int(data, 'scheduleId', 'schedule_id')
    item_title = data.get('itemTitle') or data.get('title')
    status = _sessions.start_cast(item_id, device_id, schedule_id, item_title)
    return jsonify({"success": True, **status})


@cast_bp.route('/api/cast/stop', methods=['POST'])
def cast_stop():
    """Stop the running session"""
    data = _json_body()
    result = _sessions.stop_cast(reason=data.get('reason') or 'manual')
    return jsonify({"success": True, **result})


@cast_bp.route('/api/cast/retry', methods=['POST'])
def cast_retry():
    """Retry the last cast attempt with fixed backoff"""
    data = _json_body()
    max_retries = data.get('maxRetries', _get_setting('retry', 'maxRetries', 3))
    backoff = data.get('backoffSeconds', _get_setting('retry', 'backoffSeconds', 5.0))
    result = _retry.retry_last_attempt(max_retries=max_retries, backoff_delay=backoff)
    return jsonify({"success": True, **result})


# ─────────────────────────────────────────────────────────
# Device Routes
# ─────────────────────────────────────────────────────────

@cast_bp.route('/api/devices', methods=['GET'])
def list_devices():
    """All known devices (?active=1 for active only)"""
    active_only = request.args.get('active') in ('1', 'true')
    devices = _registry.list_devices(active_only=active_only)
    return jsonify({"success": True, "devices": [d.to_dict() for d in devices]})


@cast_bp.route('/api/devices', methods=['POST'])
def add_device():
    """Register a device by hand"""
    data = _json_body()
    device = _registry.add_device(
        name=data.get('name'),
        ip_address=data.get('ipAddress') or data.get('ip_address'),
        port=_optional_int(data, 'port'),
        is_default=bool(data.get('isDefault', False)),
    )
    return jsonify({"success": True, "device": device.to_dict()}), 201


@cast_bp.route('/api/devices/scan', methods=['POST'])
def scan_devices():
    """Discover devices on the LAN (mDNS, then port probe)"""
    data = _json_body()
    timeout = data.get('timeout', _get_setting('discovery', 'timeout', 5.0))
    found = _discovery.discover(timeout=float(timeout))
    return jsonify({"success": True, "count": len(found),
                    "devices": [d.to_dict() for d in found]})


@cast_bp.route('/api/devices/<int:device_id>', methods=['PUT'])
def update_device(device_id):
    """Rename a device or change its flags"""
    data = _json_body()
    fields = {}
    for src, dst in (('name', 'name'), ('isDefault', 'is_default'), ('isActive', 'is_active'),
                     ('port', 'port')):
        if src in data:
            fields[dst] = data[src]
    device = _registry.update_device(device_id, fields)
    return jsonify({"success": True, "device": device.to_dict()})


@cast_bp.route('/api/devices/<int:device_id>/test', methods=['POST'])
def test_device(device_id):
    """Connect and launch the receiver once, then disconnect"""
    ok = _sessions.test_device(device_id)
    return jsonify({"success": ok})


# ─────────────────────────────────────────────────────────
# Logs / Status
# ─────────────────────────────────────────────────────────

@cast_bp.route('/api/logs', methods=['GET'])
def cast_logs():
    """Recent cast attempts, newest first"""
    limit = request.args.get('limit', 50, type=int)
    logs = _store.get_cast_logs(limit=max(1, min(limit, 500)))
    return jsonify({"success": True, "logs": [entry.to_dict() for entry in logs]})


@cast_bp.route('/api/status', methods=['GET'])
def system_status():
    """Service health, session state and armed schedules"""
    return jsonify({
        "success": True,
        "version": _version,
        "uptime": int((datetime.now() - _start_time).total_seconds()),
        "cast": _sessions.get_status(),
        "schedules": _scheduler.get_jobs(),
    })
