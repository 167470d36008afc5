"""
AutoCast Core Registry - Shared Instance Registry

autocast_core.create_app() populates these during startup so that
shutdown hooks and background tasks can reach the live instances
without importing the entry module. All attributes are None until
then.
"""

# ── Persistence ──
store = None              # CastStore instance

# ── Cast subsystem ──
registry = None           # DeviceRegistry instance
discovery = None          # DeviceDiscovery instance
sessions = None           # CastSessionManager instance
retry_controller = None   # RetryController instance
executor = None           # ScheduleExecutor instance
notifier = None           # EventNotifier instance

# ── Schedulers ──
trigger_scheduler = None  # TriggerScheduler instance

# ── Infrastructure ──
socketio = None           # Flask-SocketIO instance


def cleanup():
    """Disarm triggers and stop any session. Safe to call more than once."""
    if trigger_scheduler is not None:
        trigger_scheduler.stop_all()
    if sessions is not None:
        sessions.cleanup()
    if store is not None:
        store.close()


def reset():
    """Forget every instance (test isolation)."""
    global store, registry, discovery, sessions, retry_controller, executor
    global notifier, trigger_scheduler, socketio
    store = registry = discovery = sessions = retry_controller = executor = None
    notifier = trigger_scheduler = socketio = None
