# Gunicorn configuration for backvault
# Only one worker runs the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

def post_fork(server, worker):
    """
    Called in each worker right after fork, before the app is loaded.

    Designates the first worker (worker.age == 1) as the scheduler owner so
    nightly backup, retention and verification each run once per node.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (ages start at 1)
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as backup scheduler owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP worker (scheduler disabled)")
