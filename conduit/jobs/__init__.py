"""
Conduit Jobs

Interval-driven execution of named pipelines.
"""

from .intervals import Frequency, JobSchedule, parse_frequency
from .scheduler import JobScheduler, ScheduleTrigger

__all__ = [
    "Frequency",
    "JobSchedule",
    "JobScheduler",
    "ScheduleTrigger",
    "parse_frequency",
]
