"""
Reminder Playback Module

Play scheduled voice reminders into Discord voice channels when someone is there to hear them.
"""

__version__ = "1.0.0"
__author__ = "Reminder Playback"

from .config import ReminderConfig
from .errors import ReminderPlaybackError
from .models import EventDefinition, EventKind, ExecutionResult, Outcome
from .orchestrator import ReminderScheduler

__all__ = [
    "ReminderConfig",
    "ReminderPlaybackError",
    "EventDefinition",
    "EventKind",
    "ExecutionResult",
    "Outcome",
    "ReminderScheduler",
]
