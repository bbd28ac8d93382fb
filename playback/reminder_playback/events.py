"""
Static reminder definitions and rotation sets

Cron format: second(0-59) minute(0-59) hour(0-23) day(1-31) month(1-12) weekday(0-7, 0/7=Sunday)
"""

import os
from typing import Dict, Iterable, List, Optional

from .errors import ConfigError
from .models import EventDefinition, EventKind


def default_rotation_sets(audio_dir: str) -> Dict[str, List[str]]:
    """Voice variants cycled by the current hour"""
    return {
        # Shugo 15 min warning (plays at :15)
        "shugo15": [
            os.path.join(audio_dir, "shugo.mp3"),
            os.path.join(audio_dir, "shugo_1.mp3"),
            os.path.join(audio_dir, "shugo_2.mp3"),
        ],
        # Shugo 10 min warning (plays at :10)
        "shugo10": [
            os.path.join(audio_dir, "shugo5.mp3"),
            os.path.join(audio_dir, "shugo5_1.mp3"),
            os.path.join(audio_dir, "shugo5_2.mp3"),
        ],
    }


def default_events(audio_dir: str) -> List[EventDefinition]:
    def audio(name: str) -> str:
        return os.path.join(audio_dir, name)

    return [
        # Shugo, rotating between three voices
        EventDefinition("Shugo 15 min", "0 15 * * * *", EventKind.ROTATING_AUDIO_SET, "shugo15"),
        EventDefinition("Shugo 10 min", "0 10 * * * *", EventKind.ROTATING_AUDIO_SET, "shugo10"),

        # Resets and extras
        EventDefinition("Culito 3", "0 42 * * * *", EventKind.DIRECT_AUDIO, audio("culito3.mp3")),
        EventDefinition("Culito", "0 45 * * * *", EventKind.DIRECT_AUDIO, audio("culito.mp3")),
        EventDefinition("Reset Diario", "0 0 15 * * *", EventKind.DIRECT_AUDIO, audio("reset_diario.mp3")),
        EventDefinition("Mantenimiento", "0 0 11 * * 2", EventKind.DIRECT_AUDIO, audio("mantenimiento.mp3")),

        # Rift every 3 hours (00, 03, ... 21), warning 5 minutes before
        EventDefinition("Rift 5 min", "0 55 23,2,5,8,11,14,17,20 * * *", EventKind.DIRECT_AUDIO, audio("rift_5.mp3")),
        EventDefinition("Rift Spawn", "0 0 0,3,6,9,12,15,18,21 * * *", EventKind.DIRECT_AUDIO, audio("rift.mp3")),
    ]


def validate_events(events: Iterable[EventDefinition]) -> List[EventDefinition]:
    """Reject duplicate names; names key the job registry"""
    seen = set()
    result = []
    for event in events:
        if event.name in seen:
            raise ConfigError(f"Duplicate event name: {event.name!r}")
        seen.add(event.name)
        result.append(event)
    return result


def get_enabled_events(events: Iterable[EventDefinition]) -> List[EventDefinition]:
    return [event for event in events if event.enabled]


def get_event_by_name(events: Iterable[EventDefinition], name: str) -> Optional[EventDefinition]:
    for event in events:
        if event.name == name:
            return event
    return None
