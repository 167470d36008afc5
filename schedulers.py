"""
AutoCast Schedulers - TriggerScheduler and next-occurrence helpers

Each active schedule gets one armed threading.Timer. When it fires the
callback runs and the trigger re-arms itself for the following week.
Recurrences are cron expressions evaluated with croniter in the
reference time zone.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
import logging
import threading

from croniter import croniter
from zoneinfo import ZoneInfo

from core.cast.errors import ValidationError
from core.cast.types import Schedule, parse_start_time, validate_day_of_week

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Tokyo"


def to_cron(schedule: Schedule) -> str:
    """Weekly cron expression for a schedule (day 0 = Sunday)."""
    hour, minute = parse_start_time(schedule.start_time)
    return f"{minute} {hour} * * {schedule.day_of_week}"


def next_occurrence(day_of_week: int, time: str, now: datetime) -> datetime:
    """
    Next instant matching a weekly slot.

    A slot later today is today; a slot that has passed, or is exactly
    now, wraps a full week. The result keeps now's tzinfo.
    """
    validate_day_of_week(day_of_week)
    hour, minute = parse_start_time(time)
    today = (now.weekday() + 1) % 7
    days_ahead = (day_of_week - today) % 7
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0) + timedelta(days=days_ahead)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def next_schedule(schedules: Iterable[Schedule], now: datetime) -> Optional[Dict[str, Any]]:
    """The active schedule that runs soonest, with its next execution time."""
    best = None
    best_at = None
    for schedule in schedules:
        if not schedule.is_active:
            continue
        at = next_occurrence(schedule.day_of_week, schedule.start_time, now)
        if best_at is None or at < best_at:
            best, best_at = schedule, at
    if best is None:
        return None
    result = best.to_dict()
    result["nextExecution"] = best_at.isoformat()
    return result


class _Trigger:
    """One armed schedule. The token identifies the current arming."""

    def __init__(self, schedule: Schedule, cron: str):
        self.schedule = schedule
        self.cron = cron
        self.timer: Optional[threading.Timer] = None
        self.next_run: Optional[datetime] = None
        self.token = object()


class TriggerScheduler:
    """Background runner that fires weekly schedules"""

    def __init__(self, callback: Callable[[Schedule], Any], timezone: str = DEFAULT_TIMEZONE,
                 clock: Optional[Callable[[], datetime]] = None):
        self.callback = callback
        self.tz = ZoneInfo(timezone)
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.triggers: Dict[int, _Trigger] = {}
        self.lock = threading.Lock()

    def _arm_locked(self, trigger: _Trigger, after: datetime) -> None:
        trigger.next_run = croniter(trigger.cron, after).get_next(datetime)
        delay = max(0.0, (trigger.next_run - self.clock()).total_seconds())
        timer = threading.Timer(delay, self._fire, args=[trigger.schedule.id, trigger.token])
        timer.daemon = True
        trigger.timer = timer
        timer.start()

    def register(self, schedule: Schedule) -> Optional[datetime]:
        """
        Arm (or re-arm) the trigger for a schedule.

        Inactive schedules are unregistered instead.

        Returns:
            Next fire time, or None when the schedule is inactive

        Raises:
            ValidationError: If the recurrence is malformed
        """
        if not schedule.is_active:
            self.unregister(schedule.id)
            return None

        schedule.validate()
        cron = to_cron(schedule)
        if not croniter.is_valid(cron):
            raise ValidationError(f"Invalid recurrence for schedule {schedule.id}: {cron}")

        with self.lock:
            existing = self.triggers.pop(schedule.id, None)
            if existing and existing.timer:
                existing.timer.cancel()
            trigger = _Trigger(schedule, cron)
            self._arm_locked(trigger, self.clock())
            self.triggers[schedule.id] = trigger
            next_run = trigger.next_run

        logger.info(f"Schedule {schedule.id} armed ({cron}), next run {next_run.isoformat()}")
        return next_run

    def unregister(self, schedule_id: int) -> bool:
        with self.lock:
            trigger = self.triggers.pop(schedule_id, None)
            if trigger is None:
                return False
            if trigger.timer:
                trigger.timer.cancel()
        logger.info(f"Schedule {schedule_id} disarmed")
        return True

    def _fire(self, schedule_id: int, token: object) -> None:
        with self.lock:
            trigger = self.triggers.get(schedule_id)
            if trigger is None or trigger.token is not token:
                return
            schedule = trigger.schedule
            fired_at = trigger.next_run

        try:
            self.callback(schedule)
        except Exception as e:
            # Outer guard: a failing run never disarms the trigger
            logger.error(f"Schedule {schedule_id} callback error: {e}", exc_info=True)

        with self.lock:
            # Unregistered or replaced while the callback ran
            if self.triggers.get(schedule_id) is not trigger:
                return
            self._arm_locked(trigger, max(fired_at, self.clock()))
            logger.debug(f"Schedule {schedule_id} re-armed for {trigger.next_run.isoformat()}")

    def list_active(self) -> Set[int]:
        with self.lock:
            return set(self.triggers)

    def get_jobs(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [
                {
                    "scheduleId": sid,
                    "cron": t.cron,
                    "nextRun": t.next_run.isoformat() if t.next_run else None,
                }
                for sid, t in sorted(self.triggers.items())
            ]

    def load(self, schedules: Iterable[Schedule]) -> int:
        """Arm every active schedule; malformed ones are logged and skipped."""
        count = 0
        for schedule in schedules:
            if not schedule.is_active:
                continue
            try:
                self.register(schedule)
                count += 1
            except ValidationError as e:
                logger.error(f"Schedule {schedule.id} not armed: {e}")
        logger.info(f"Loaded {count} active schedule(s)")
        return count

    def refresh(self, schedules: Iterable[Schedule]) -> int:
        self.stop_all()
        return self.load(schedules)

    def stop_all(self) -> None:
        with self.lock:
            triggers = list(self.triggers.values())
            self.triggers.clear()
        for trigger in triggers:
            if trigger.timer:
                trigger.timer.cancel()
        if triggers:
            logger.info(f"Disarmed {len(triggers)} schedule(s)")
