"""
Gunicorn config. Starts the health monitor thread in each worker process
(post_fork). With --workers 2, two processes each probe the providers and
keep their own passive health windows.
"""

import logging


def post_fork(server, worker):
    """Prepare the cache DB and start the health monitor in this gunicorn worker process."""
    try:
        from models import init_db
        init_db()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to initialize cache database: %s", e)
    try:
        from health_monitor import start_monitor
        start_monitor()
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to start health monitor: %s", e)
