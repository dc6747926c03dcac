"""Periodic maintenance scheduling."""

from sellibra.scheduler.service import SchedulerService

__all__ = ["SchedulerService"]
