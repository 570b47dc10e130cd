"""
Trigger monitoring: adaptive frequency, durable jobs and the tick scheduler.
"""
from .frequency import MonitoringFrequency, calculate_frequency, gcd_minutes
from .job_store import JobStore
from .models import JobStatus, MonitoringJob, job_key
from .scheduler import MonitoringScheduler, TickResult

__all__ = [
    "MonitoringFrequency",
    "calculate_frequency",
    "gcd_minutes",
    "JobStore",
    "JobStatus",
    "MonitoringJob",
    "job_key",
    "MonitoringScheduler",
    "TickResult",
]
