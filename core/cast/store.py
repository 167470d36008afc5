"""
Cast Store - SQLite persistence for schedules, devices and cast logs

One sqlite3 connection shared across threads and guarded by a lock.
Writes that read-modify-write a row (device reconciliation) run inside a
single transaction under that lock.

Tables:
    schedules   recurring slots (CRUD owned by the API layer)
    devices     known Cast devices, UNIQUE ip_address
    cast_logs   one audit record per cast attempt
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import sqlite3
import threading

from .errors import NotFoundError, ValidationError
from .types import (
    AttemptStatus,
    CastAttempt,
    DEFAULT_CAST_PORT,
    Device,
    Schedule,
    parse_start_time,
    validate_day_of_week,
)

logger = logging.getLogger(__name__)


SCHEMA = [
    '''CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL,
        ip_address TEXT NOT NULL UNIQUE, port INTEGER DEFAULT 8009,
        is_default BOOLEAN DEFAULT 0, is_active BOOLEAN DEFAULT 1,
        last_seen TIMESTAMP, created_at TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS schedules (
        id INTEGER PRIMARY KEY AUTOINCREMENT, channel_id TEXT NOT NULL, channel_name TEXT,
        day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
        start_time TEXT NOT NULL, duration_minutes INTEGER DEFAULT 60,
        device_id INTEGER REFERENCES devices(id), is_active BOOLEAN DEFAULT 1,
        created_at TIMESTAMP, updated_at TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS cast_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT, schedule_id INTEGER, item_id TEXT NOT NULL,
        item_title TEXT, device_id INTEGER, status TEXT NOT NULL,
        error_message TEXT, started_at TIMESTAMP, ended_at TIMESTAMP
    )''',
    'CREATE INDEX IF NOT EXISTS idx_cast_logs_started ON cast_logs(started_at)',
]

_SCHEDULE_FIELDS = ('channel_id', 'channel_name', 'day_of_week', 'start_time',
                    'duration_minutes', 'device_id', 'is_active')
_DEVICE_FIELDS = ('name', 'ip_address', 'port', 'is_default', 'is_active')


def _validate_schedule_data(data: Dict[str, Any]) -> None:
    if not data.get('channel_id'):
        raise ValidationError("channel_id is required")
    validate_day_of_week(data.get('day_of_week'))
    parse_start_time(data.get('start_time'))
    duration = data.get('duration_minutes', 60)
    if duration is not None and (not isinstance(duration, int) or duration <= 0):
        raise ValidationError(f"Invalid duration: {duration!r}")


class CastStore:
    """SQLite-backed store for the cast subsystem."""

    def __init__(self, db_path: str, clock: Callable[[], datetime] = datetime.now):
        self.db_path = db_path
        self.clock = clock
        self.lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

    def init_schema(self) -> None:
        with self.lock:
            c = self.conn.cursor()
            for statement in SCHEMA:
                c.execute(statement)
            self.conn.commit()
        logger.info(f"Database schema initialized ({self.db_path})")

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def _now(self) -> str:
        return self.clock().isoformat()

    # ─────────────────────────────────────────────────────────
    # Schedules
    # ─────────────────────────────────────────────────────────

    def get_schedule(self, schedule_id: int) -> Optional[Schedule]:
        with self.lock:
            row = self.conn.execute('SELECT * FROM schedules WHERE id = ?', (schedule_id,)).fetchone()
        return Schedule.from_row(row) if row else None

    def list_schedules(self) -> List[Schedule]:
        with self.lock:
            rows = self.conn.execute('SELECT * FROM schedules ORDER BY day_of_week, start_time').fetchall()
        return [Schedule.from_row(r) for r in rows]

    def get_active_schedules(self) -> List[Schedule]:
        with self.lock:
            rows = self.conn.execute(
                'SELECT * FROM schedules WHERE is_active = 1 ORDER BY day_of_week, start_time'
            ).fetchall()
        return [Schedule.from_row(r) for r in rows]

    def create_schedule(self, data: Dict[str, Any]) -> Schedule:
        _validate_schedule_data(data)
        now = self._now()
        with self.lock:
            c = self.conn.execute(
                '''INSERT INTO schedules (channel_id, channel_name, day_of_week, start_time,
                   duration_minutes, device_id, is_active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (data['channel_id'], data.get('channel_name', ''), data['day_of_week'],
                 data['start_time'], data.get('duration_minutes', 60), data.get('device_id'),
                 bool(data.get('is_active', True)), now, now))
            self.conn.commit()
            schedule_id = c.lastrowid
        return self.get_schedule(schedule_id)

    def update_schedule(self, schedule_id: int, data: Dict[str, Any]) -> Schedule:
        existing = self.get_schedule(schedule_id)
        if not existing:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        merged = {
            'channel_id': existing.channel_id, 'channel_name': existing.channel_name,
            'day_of_week': existing.day_of_week, 'start_time': existing.start_time,
            'duration_minutes': existing.duration_minutes, 'device_id': existing.device_id,
            'is_active': existing.is_active,
        }
        merged.update({k: v for k, v in data.items() if k in _SCHEDULE_FIELDS})
        _validate_schedule_data(merged)
        with self.lock:
            self.conn.execute(
                '''UPDATE schedules SET channel_id = ?, channel_name = ?, day_of_week = ?,
                   start_time = ?, duration_minutes = ?, device_id = ?, is_active = ?,
                   updated_at = ? WHERE id = ?''',
                (merged['channel_id'], merged['channel_name'], merged['day_of_week'],
                 merged['start_time'], merged['duration_minutes'], merged['device_id'],
                 bool(merged['is_active']), self._now(), schedule_id))
            self.conn.commit()
        return self.get_schedule(schedule_id)

    def delete_schedule(self, schedule_id: int) -> bool:
        with self.lock:
            c = self.conn.execute('DELETE FROM schedules WHERE id = ?', (schedule_id,))
            self.conn.commit()
            return c.rowcount > 0

    # ─────────────────────────────────────────────────────────
    # Devices
    # ─────────────────────────────────────────────────────────

    def get_device(self, device_id: int) -> Optional[Device]:
        with self.lock:
            row = self.conn.execute('SELECT * FROM devices WHERE id = ?', (device_id,)).fetchone()
        return Device.from_row(row) if row else None

    def list_devices(self, active_only: bool = False) -> List[Device]:
        sql = 'SELECT * FROM devices'
        if active_only:
            sql += ' WHERE is_active = 1'
        sql += ' ORDER BY name'
        with self.lock:
            rows = self.conn.execute(sql).fetchall()
        return [Device.from_row(r) for r in rows]

    def get_default_device(self) -> Optional[Device]:
        with self.lock:
            row = self.conn.execute(
                'SELECT * FROM devices WHERE is_default = 1 AND is_active = 1 ORDER BY id LIMIT 1'
            ).fetchone()
        return Device.from_row(row) if row else None

    def get_most_recent_device(self) -> Optional[Device]:
        with self.lock:
            row = self.conn.execute(
                '''SELECT * FROM devices WHERE is_active = 1
                   ORDER BY last_seen IS NULL, last_seen DESC, id DESC LIMIT 1'''
            ).fetchone()
        return Device.from_row(row) if row else None

    def create_device(self, name: str, ip_address: str, port: Optional[int] = None,
                      is_default: bool = False, last_seen: Optional[datetime] = None) -> Device:
        if not name or not ip_address:
            raise ValidationError("name and ip_address are required")
        seen = (last_seen or self.clock()).isoformat()
        with self.lock:
            try:
                c = self.conn.execute(
                    '''INSERT INTO devices (name, ip_address, port, is_default, is_active, last_seen, created_at)
                       VALUES (?, ?, ?, 0, 1, ?, ?)''',
                    (name, ip_address, port or DEFAULT_CAST_PORT, seen, self._now()))
            except sqlite3.IntegrityError:
                raise ValidationError(f"Device with address {ip_address} already exists")
            device_id = c.lastrowid
            if is_default:
                self._set_default_locked(device_id)
            self.conn.commit()
        return self.get_device(device_id)

    def update_device(self, device_id: int, data: Dict[str, Any]) -> Device:
        existing = self.get_device(device_id)
        if not existing:
            raise NotFoundError(f"Device {device_id} not found")
        fields = {k: v for k, v in data.items() if k in _DEVICE_FIELDS}
        with self.lock:
            if fields.get('is_default'):
                self._set_default_locked(device_id)
            try:
                for key, value in fields.items():
                    if key == 'is_default' and value:
                        continue
                    self.conn.execute(f'UPDATE devices SET {key} = ? WHERE id = ?', (value, device_id))
            except sqlite3.IntegrityError:
                self.conn.rollback()
                raise ValidationError(f"Device with address {fields.get('ip_address')} already exists")
            self.conn.commit()
        return self.get_device(device_id)

    def _set_default_locked(self, device_id: int) -> None:
        self.conn.execute('UPDATE devices SET is_default = 0 WHERE id != ?', (device_id,))
        self.conn.execute('UPDATE devices SET is_default = 1 WHERE id = ?', (device_id,))

    def touch_device(self, device_id: int, seen_at: Optional[datetime] = None) -> None:
        with self.lock:
            self.conn.execute('UPDATE devices SET last_seen = ? WHERE id = ?',
                              ((seen_at or self.clock()).isoformat(), device_id))
            self.conn.commit()

    def upsert_seen_device(self, name: str, address: str, port: int) -> Tuple[Device, bool]:
        """
        Refresh last_seen for a known address or insert a new row.

        Runs as one transaction under the store lock so concurrent
        reconciliations of the same address never produce two rows.

        Returns:
            (device, created)
        """
        now = self._now()
        with self.lock:
            row = self.conn.execute('SELECT id FROM devices WHERE ip_address = ?', (address,)).fetchone()
            if row:
                self.conn.execute('UPDATE devices SET last_seen = ? WHERE id = ?', (now, row['id']))
                device_id, created = row['id'], False
            else:
                c = self.conn.execute(
                    '''INSERT INTO devices (name, ip_address, port, is_default, is_active, last_seen, created_at)
                       VALUES (?, ?, ?, 0, 1, ?, ?)''',
                    (name, address, port or DEFAULT_CAST_PORT, now, now))
                device_id, created = c.lastrowid, True
            self.conn.commit()
        return self.get_device(device_id), created

    # ─────────────────────────────────────────────────────────
    # Cast logs (audit)
    # ─────────────────────────────────────────────────────────

    def create_cast_log(self, item_id: str, status: AttemptStatus,
                        schedule_id: Optional[int] = None, device_id: Optional[int] = None,
                        item_title: Optional[str] = None,
                        error_message: Optional[str] = None) -> int:
        now = self._now()
        ended = now if status != AttemptStatus.STARTED else None
        with self.lock:
            c = self.conn.execute(
                '''INSERT INTO cast_logs (schedule_id, item_id, item_title, device_id, status,
                   error_message, started_at, ended_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
                (schedule_id, item_id, item_title, device_id, status.value,
                 error_message, now, ended))
            self.conn.commit()
            return c.lastrowid

    def update_cast_log_end(self, log_id: int, status: AttemptStatus,
                            error_message: Optional[str] = None) -> None:
        with self.lock:
            self.conn.execute(
                'UPDATE cast_logs SET status = ?, error_message = ?, ended_at = ? WHERE id = ?',
                (status.value, error_message, self._now(), log_id))
            self.conn.commit()

    def get_cast_log(self, log_id: int) -> Optional[CastAttempt]:
        with self.lock:
            row = self.conn.execute('SELECT * FROM cast_logs WHERE id = ?', (log_id,)).fetchone()
        return CastAttempt.from_row(row) if row else None

    def get_cast_logs(self, limit: int = 50) -> List[CastAttempt]:
        with self.lock:
            rows = self.conn.execute(
                'SELECT * FROM cast_logs ORDER BY started_at DESC, id DESC LIMIT ?', (limit,)
            ).fetchall()
        return [CastAttempt.from_row(r) for r in rows]
