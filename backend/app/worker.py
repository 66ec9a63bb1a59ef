# Test Case Generator - Queue Worker
# Description: rq worker process that consumes signup jobs and drives the browser

"""Run with `testgen-worker` (or `python -m backend.app.worker`).

A single rq Worker handles one job at a time in FIFO order; SIGINT/SIGTERM
trigger rq's warm shutdown, letting the current job finish.
"""
from redis import Redis
from rq import Worker

from backend.app.config import settings
from backend.app.module.Functions_module import setup_logger

logger = setup_logger()


def main():
    logger.info('WORKER: Worker process starting...')
    connection = Redis.from_url(settings.redis_url)
    worker = Worker([settings.signup_queue], connection=connection)
    logger.info(f"WORKER: Ready and listening for jobs on '{settings.signup_queue}'.")
    try:
        worker.work()
    finally:
        connection.close()
        logger.info('WORKER: Redis connection closed.')


if __name__ == '__main__':
    main()
