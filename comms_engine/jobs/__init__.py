"""
Background Jobs for the Comms Engine.

This module contains scheduled and background jobs:
- reminder_cron: Periodic scheduling and sending of form reminders
- queue_worker: Standalone email queue processor
"""

from .queue_worker import run_worker
from .reminder_cron import run_reminder_job

__all__ = ["run_reminder_job", "run_worker"]
