"""
Schedule Executor - What happens when a schedule's trigger fires

    schedule_triggered -> prober -> live_detected -> start_cast
                                 \\-> no_live_stream

Nothing raised here ever reaches the trigger thread.
"""

from typing import Any, Dict, Optional
import logging

from .errors import CastError, NotFoundError, UpstreamServiceError
from .notifier import EventNotifier, EventType
from .prober import LiveStatusProber
from .session import CastSessionManager
from .store import CastStore
from .types import LiveStatus, Schedule

logger = logging.getLogger(__name__)


class ScheduleExecutor:
    """Runs one schedule: probe the channel, cast if live."""

    def __init__(self, prober: LiveStatusProber, sessions: CastSessionManager,
                 notifier: EventNotifier, store: Optional[CastStore] = None):
        self.prober = prober
        self.sessions = sessions
        self.notifier = notifier
        self.store = store

    def execute(self, schedule: Schedule) -> Dict[str, Any]:
        """
        Trigger callback. Returns a small outcome dict for logging and
        the on-demand run endpoint.
        """
        try:
            return self._execute(schedule)
        except Exception as e:
            logger.error(f"[Schedule {schedule.id}] execution error: {e}", exc_info=True)
            self.notifier.publish(EventType.SCHEDULE_ERROR, {
                "scheduleId": schedule.id, "error": str(e),
            })
            return {"scheduleId": schedule.id, "outcome": "error", "error": str(e)}

    def _execute(self, schedule: Schedule) -> Dict[str, Any]:
        logger.info(f"[Schedule {schedule.id}] triggered: {schedule.channel_name} at {schedule.start_time}")
        self.notifier.publish(EventType.SCHEDULE_TRIGGERED, {
            "scheduleId": schedule.id,
            "channelName": schedule.channel_name,
            "startTime": schedule.start_time,
        })

        try:
            status = self.prober.check_live(schedule.channel_id)
        except UpstreamServiceError as e:
            logger.warning(f"[Schedule {schedule.id}] live check failed ({e.status_code}): {e}")
            status = LiveStatus.not_live()

        if not status.is_live:
            logger.info(f"[Schedule {schedule.id}] no live stream ({status.state.value})")
            self.notifier.publish(EventType.NO_LIVE_STREAM, {
                "scheduleId": schedule.id, "channelName": schedule.channel_name,
            })
            return {"scheduleId": schedule.id, "outcome": "no_live_stream"}

        self.notifier.publish(EventType.LIVE_DETECTED, {
            "itemId": status.item_id,
            "title": status.title,
            "channelTitle": status.channel_title,
            "thumbnail": status.thumbnail,
        })

        if schedule.device_id is None:
            logger.warning(f"[Schedule {schedule.id}] live but no device configured, not casting")
            return {"scheduleId": schedule.id, "outcome": "live_no_device", "itemId": status.item_id}

        try:
            self.sessions.start_cast(status.item_id, schedule.device_id, schedule.id,
                                     status.title)
        except CastError as e:
            # already audited and announced by the session manager
            logger.error(f"[Schedule {schedule.id}] cast failed: {e}")
            return {"scheduleId": schedule.id, "outcome": "cast_failed",
                    "itemId": status.item_id, "error": str(e)}

        return {"scheduleId": schedule.id, "outcome": "casting", "itemId": status.item_id}

    def run_now(self, schedule_id: int) -> Dict[str, Any]:
        """Fire one schedule immediately, outside its recurrence."""
        if self.store is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return self.execute(schedule)
