# Gunicorn configuration for dbsnap
# Exactly one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
# A dump can run for an hour; manual HTTP triggers must not be killed early
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '3900'))

# The arbiter numbers workers from 1 in spawn order
FIRST_WORKER_AGE = 1


def post_fork(server, worker):
    """
    Designate the first worker as the scheduler owner.

    Runs in the worker before the application is loaded, so create_app()
    sees SCHEDULER_WORKER. Every other worker serves HTTP only and each
    tier's cron job fires once per deployment rather than once per worker.
    """
    is_owner = worker.age == FIRST_WORKER_AGE
    os.environ['SCHEDULER_WORKER'] = 'true' if is_owner else 'false'
    role = 'backup scheduler owner' if is_owner else 'HTTP worker (scheduler disabled)'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): {role}")
