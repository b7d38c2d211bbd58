# Gunicorn configuration for Landkeeper
# Only one worker may run the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
# A manual backup runs synchronously inside the request
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 3600))


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    The first worker (worker.age == 0) owns the scheduler so the backup
    cron fires once per deployment, not once per worker.

    Args:
        worker: Gunicorn worker instance (uses 'age' attribute: 0, 1, 2, ...)
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
