"""
Background Jobs Module

Handles scheduled tasks for:
- Automatic order status transitions (pending -> processing -> delivering)
"""

from app.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
]
