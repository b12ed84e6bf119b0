"""Scheduler module for DataLane."""

from apps.scheduler.runner import ReportScheduler
from apps.scheduler.tasks import start_scheduler, stop_scheduler

__all__ = ["ReportScheduler", "start_scheduler", "stop_scheduler"]
