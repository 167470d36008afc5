"""
AutoCast Core - Schedules Blueprint
Routes: /api/schedules/*
Dependencies: store, trigger_scheduler, executor, timezone
"""

from datetime import datetime

from flask import Blueprint, jsonify, request
from zoneinfo import ZoneInfo

from core.cast.errors import CastError, NotFoundError
from schedulers import next_schedule

schedules_bp = Blueprint('schedules', __name__)

# Dependencies injected at registration time
_store = None
_scheduler = None
_executor = None
_tz = None

_FIELD_MAP = {
    'channelId': 'channel_id', 'channelName': 'channel_name', 'dayOfWeek': 'day_of_week',
    'startTime': 'start_time', 'durationMinutes': 'duration_minutes', 'deviceId': 'device_id',
    'isActive': 'is_active',
}


def init_app(store, trigger_scheduler, executor, timezone):
    """Initialize blueprint with required dependencies."""
    global _store, _scheduler, _executor, _tz
    _store = store
    _scheduler = trigger_scheduler
    _executor = executor
    _tz = ZoneInfo(timezone)


@schedules_bp.errorhandler(CastError)
def handle_cast_error(e):
    return jsonify({"success": False, "error": str(e)}), e.http_status


def _schedule_fields(data):
    """Accept camelCase or snake_case keys."""
    fields = {}
    for key, value in data.items():
        name = _FIELD_MAP.get(key, key)
        if name in _FIELD_MAP.values():
            fields[name] = value
    return fields


# ─────────────────────────────────────────────────────────
# Schedules Routes
# ─────────────────────────────────────────────────────────

@schedules_bp.route('/api/schedules', methods=['GET'])
def get_schedules():
    """Get all schedules"""
    schedules = _store.list_schedules()
    return jsonify({"success": True, "schedules": [s.to_dict() for s in schedules]})


@schedules_bp.route('/api/schedules', methods=['POST'])
def create_schedule():
    """Create a schedule and arm its trigger"""
    data = request.get_json(silent=True) or {}
    schedule = _store.create_schedule(_schedule_fields(data))
    _scheduler.register(schedule)
    return jsonify({"success": True, "schedule": schedule.to_dict()}), 201


@schedules_bp.route('/api/schedules/next', methods=['GET'])
def get_next_schedule():
    """The active schedule that runs soonest"""
    upcoming = next_schedule(_store.get_active_schedules(), datetime.now(_tz))
    return jsonify({"success": True, "schedule": upcoming})


@schedules_bp.route('/api/schedules/refresh', methods=['POST'])
def refresh_schedules():
    """Re-arm every active schedule from the database"""
    count = _scheduler.refresh(_store.get_active_schedules())
    return jsonify({"success": True, "armed": count, "jobs": _scheduler.get_jobs()})


@schedules_bp.route('/api/schedules/<int:schedule_id>', methods=['GET'])
def get_schedule(schedule_id):
    """Get a single schedule"""
    schedule = _store.get_schedule(schedule_id)
    if not schedule:
        raise NotFoundError(f"Schedule {schedule_id} not found")
    return jsonify({"success": True, "schedule": schedule.to_dict()})


@schedules_bp.route('/api/schedules/<int:schedule_id>', methods=['PUT'])
def update_schedule(schedule_id):
    """Update a schedule; its trigger is replaced atomically"""
    data = request.get_json(silent=True) or {}
    schedule = _store.update_schedule(schedule_id, _schedule_fields(data))
    _scheduler.register(schedule)
    return jsonify({"success": True, "schedule": schedule.to_dict()})


@schedules_bp.route('/api/schedules/<int:schedule_id>', methods=['DELETE'])
def delete_schedule(schedule_id):
    """Delete a schedule and disarm its trigger"""
    _scheduler.unregister(schedule_id)
    if not _store.delete_schedule(schedule_id):
        raise NotFoundError(f"Schedule {schedule_id} not found")
    return jsonify({"success": True})


@schedules_bp.route('/api/schedules/<int:schedule_id>/run', methods=['POST'])
def run_schedule(schedule_id):
    """Run a schedule now (live check, then cast)"""
    result = _executor.run_now(schedule_id)
    return jsonify({"success": result.get('outcome') != 'error', **result})
