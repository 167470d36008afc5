#!/usr/bin/env python3
"""
AutoCast Core - Scheduled Live Stream Casting Service

Watches weekly schedules, checks whether the channel is live when a slot
starts and casts the stream to a Cast device on the LAN.

Features:
- Weekly triggers (croniter, reference time zone)
- mDNS discovery with port-probe fallback
- Single cast session with preemption, manual stop and retry
- REST API + Socket.IO events and commands
"""

import atexit
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler

from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO

import core_registry as reg
import core_settings as cfg
from core.cast.discovery import DeviceDiscovery, MdnsDiscoveryStrategy, PortProbeStrategy
from core.cast.executor import ScheduleExecutor
from core.cast.notifier import SocketIONotifier
from core.cast.prober import YouTubeLiveProber
from core.cast.registry import DeviceRegistry
from core.cast.retry import RetryController
from core.cast.session import CastSessionManager
from core.cast.store import CastStore
from core.cast.transport import create_device_control
from schedulers import TriggerScheduler

logger = logging.getLogger('autocast')

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'


def setup_logging(level=None, log_dir=None):
    """Console plus a daily-rotated autocast.log."""
    level = level or cfg.LOG_LEVEL
    log_dir = log_dir or cfg.LOG_DIR
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in list(root.handlers):
        if getattr(handler, '_autocast', False):
            root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    console._autocast = True
    root.addHandler(console)

    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            os.path.join(log_dir, 'autocast.log'),
            when='midnight',
            backupCount=14,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        file_handler._autocast = True
        root.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"File logging disabled ({log_dir}): {e}")


def create_app(db_path=None, prober=None, control_factory=None, discovery=None,
               timezone=None, start_scheduler=True):
    """
    Build the Flask app, Socket.IO server and the cast subsystem.

    Every collaborator can be swapped for tests; defaults are the real
    adapters configured from core_settings.
    """
    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": "*"}})
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')
    timezone = timezone or cfg.TIMEZONE
    setting = cfg.get_setting

    store = CastStore(db_path or cfg.DB_PATH)
    store.init_schema()

    notifier = SocketIONotifier(socketio)
    registry = DeviceRegistry(store)
    if discovery is None:
        discovery = DeviceDiscovery(
            registry, notifier,
            primary=MdnsDiscoveryStrategy(),
            fallback=PortProbeStrategy(
                port=setting('cast', 'defaultPort', 8009),
                probe_timeout=setting('discovery', 'probeTimeout', 1.0),
                max_workers=setting('discovery', 'probeWorkers', 64),
            ),
            default_timeout=setting('discovery', 'timeout', 5.0),
        )
    sessions = CastSessionManager(
        registry, store, notifier,
        control_factory=control_factory or create_device_control,
        connect_timeout=setting('cast', 'connectTimeout', 10.0),
        launch_timeout=setting('cast', 'launchTimeout', 15.0),
        load_timeout=setting('cast', 'loadTimeout', 15.0),
        stop_timeout=setting('cast', 'stopTimeout', 10.0),
        discovery=discovery,
    )
    retry_controller = RetryController(sessions, notifier)
    executor = ScheduleExecutor(prober or YouTubeLiveProber(cfg.YOUTUBE_API_KEY),
                                sessions, notifier, store=store)
    trigger_scheduler = TriggerScheduler(executor.execute, timezone=timezone)

    # ── Populate core_registry ──
    reg.store = store
    reg.registry = registry
    reg.discovery = discovery
    reg.sessions = sessions
    reg.retry_controller = retry_controller
    reg.executor = executor
    reg.notifier = notifier
    reg.trigger_scheduler = trigger_scheduler
    reg.socketio = socketio

    # ============================================================
    # Blueprint Registration
    # ============================================================
    from blueprints.cast_bp import cast_bp, init_app as cast_init
    from blueprints.schedules_bp import schedules_bp, init_app as schedules_init
    from blueprints import socket_commands

    cast_init(sessions, retry_controller, discovery, registry, store, trigger_scheduler,
              setting, cfg.AUTOCAST_VERSION)
    schedules_init(store, trigger_scheduler, executor, timezone)
    socket_commands.init_app(socketio, sessions, retry_controller, discovery, setting)

    app.register_blueprint(cast_bp)
    app.register_blueprint(schedules_bp)

    if start_scheduler:
        trigger_scheduler.load(store.get_active_schedules())

    return app, socketio


def main():
    setup_logging()

    print("\n" + "=" * 60)
    print(f"  AutoCast Core v{cfg.AUTOCAST_VERSION} - Scheduled Live Casting")
    print(f"  Database: {cfg.DB_PATH}")
    print(f"  Timezone: {cfg.TIMEZONE}")
    print(f"  Port:     {cfg.API_PORT}")
    print("=" * 60 + "\n")

    if not cfg.YOUTUBE_API_KEY:
        logger.warning("YOUTUBE_API_KEY not set; live checks will fail")

    app, socketio = create_app()
    atexit.register(reg.cleanup)

    try:
        socketio.run(app, host='0.0.0.0', port=cfg.API_PORT, allow_unsafe_werkzeug=True)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        reg.cleanup()


if __name__ == '__main__':
    main()
