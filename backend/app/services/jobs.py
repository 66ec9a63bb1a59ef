"""Signup job queue on Redis (rq).

The HTTP app only enqueues and reads job state; the worker process
(`backend.app.worker`) executes `run_signup_job`.
"""
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Callback, Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.results import Result

from backend.app.config import settings
from backend.app.module.Functions_module import setup_logger
from backend.app.services.signup_flow import create_signup_accounts

logger = setup_logger()


class QueueUnavailableError(RuntimeError):
    """Redis could not be reached."""


def run_signup_job(count_to_create: int, env: Optional[str] = None, region: Optional[str] = None) -> Dict[str, Any]:
    """Job function executed by the worker; its return value is the job result."""
    logger.info(f"WORKER: Received signup job. Will create {count_to_create} accounts (env={env}, region={region}).")
    return create_signup_accounts(count_to_create, env=env, region=region)


def report_job_success(job, connection, result, *args, **kwargs):
    logger.info(f"WORKER: Job {job.id} has completed. Result: {result}")


def report_job_failure(job, connection, exc_type, exc_value, traceback):
    logger.error(f"WORKER: Job {job.id} has failed with error: {exc_value}")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class SignupJobQueue:
    """Producer side of the signup queue: enqueue jobs and report their state."""

    def __init__(self, settings_obj, connection: Optional[Redis] = None):
        self.settings = settings_obj
        self._connection = connection
        self._queue: Optional[Queue] = None

    @property
    def connection(self) -> Redis:
        if self._connection is None:
            # rediss:// URLs enable TLS in redis-py
            self._connection = Redis.from_url(self.settings.redis_url)
        return self._connection

    @property
    def queue(self) -> Queue:
        if self._queue is None:
            self._queue = Queue(
                self.settings.signup_queue,
                connection=self.connection,
                default_timeout=self.settings.SIGNUP_JOB_TIMEOUT,
            )
        return self._queue

    def ping(self) -> bool:
        try:
            return bool(self.connection.ping())
        except RedisError as e:
            logger.warning(f"Job queue ping failed: {e}")
            return False

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self._queue = None

    def enqueue(self, count: int, env: Optional[str] = None, region: Optional[str] = None) -> Dict[str, Any]:
        env = env or self.settings.signup_default_env
        region = region or self.settings.signup_default_region
        try:
            job = self.queue.enqueue(
                run_signup_job,
                kwargs={"count_to_create": count, "env": env, "region": region},
                job_timeout=self.settings.SIGNUP_JOB_TIMEOUT,
                result_ttl=self.settings.SIGNUP_RESULT_TTL,
                failure_ttl=self.settings.SIGNUP_RESULT_TTL,
                meta={"countToCreate": count, "env": env, "region": region},
                on_success=Callback(report_job_success),
                on_failure=Callback(report_job_failure),
            )
        except RedisError as e:
            logger.error(f"Failed to enqueue signup job: {e}")
            raise QueueUnavailableError(str(e)) from e

        logger.info(f"Enqueued signup job {job.id} for {count} accounts (env={env}, region={region})")
        return self._snapshot(job)

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            job = Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None
        except RedisError as e:
            raise QueueUnavailableError(str(e)) from e
        return self._snapshot(job)

    def _snapshot(self, job: Job) -> Dict[str, Any]:
        status = job.get_status(refresh=False)
        meta = job.meta or {}
        snapshot = {
            "jobId": job.id,
            "status": getattr(status, "value", status),
            "countToCreate": meta.get("countToCreate"),
            "env": meta.get("env"),
            "region": meta.get("region"),
            "enqueuedAt": _iso(job.enqueued_at),
            "startedAt": _iso(job.started_at),
            "endedAt": _iso(job.ended_at),
            "result": None,
            "error": None,
        }
        latest = job.latest_result()
        if latest is not None:
            if latest.type == Result.Type.SUCCESSFUL:
                snapshot["result"] = latest.return_value
            elif latest.type == Result.Type.FAILED:
                # Last traceback line carries the exception type and message
                lines = (latest.exc_string or "").strip().splitlines()
                snapshot["error"] = lines[-1] if lines else "Job failed"
        return snapshot


signup_queue = SignupJobQueue(settings)
