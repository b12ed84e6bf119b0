"""Durable report job queue."""

from apps.queue.exceptions import PermanentJobError
from apps.queue.queue import JobEnvelope, JobQueue, retry_delay

__all__ = ["JobEnvelope", "JobQueue", "PermanentJobError", "retry_delay"]
