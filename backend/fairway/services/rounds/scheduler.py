from fairway import socketio
from .reconciler import run_reconciler


_started_apps = set()


def start_reconciler(app) -> bool:
    """Start the periodic reconciler loop for ``app`` as a background task.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - At most one loop per app per process
    - Each invocation runs stale sweep, orphaned transfers and purge, then
      sleeps RECONCILE_INTERVAL_SEC
    Returns True when a loop was started.
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return False
    if id(app) in _started_apps:
        app.logger.info("[reconciler-skip] loop already running")
        return False
    _started_apps.add(id(app))

    interval = int(app.config.get('RECONCILE_INTERVAL_SEC', 3600))
    app.logger.info(f"[reconciler-start] interval={interval}s")

    def _worker():
        while True:
            try:
                hb = int(app.config.get('RECONCILER_HEARTBEAT_SEC', 0))
            except Exception:
                hb = 0
            if hb and hb > 0:
                slept = 0
                while slept < interval:
                    step = min(hb, interval - slept)
                    socketio.sleep(step)
                    slept += step
                    app.logger.info(f"[reconciler-heartbeat] next_run_in={max(0, interval - slept)}s")
            else:
                socketio.sleep(interval)
            try:
                run_reconciler(app)
            except Exception:
                app.logger.exception("[reconciler-error] invocation failed")

    socketio.start_background_task(_worker)
    return True
