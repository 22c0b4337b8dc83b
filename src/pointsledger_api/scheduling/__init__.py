"""Scheduling utilities for recurring loyalty maintenance."""

from .config import JobDefinition, ScheduleConfigError, load_job_definitions
from .runner import LoyaltyJobScheduler

__all__ = ["JobDefinition", "LoyaltyJobScheduler", "ScheduleConfigError", "load_job_definitions"]
