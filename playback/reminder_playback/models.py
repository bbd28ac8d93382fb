"""
Data models and enums for reminder playback system
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EventKind(Enum):
    """How an event's content is turned into audio"""
    DIRECT_AUDIO = "audio"
    ROTATING_AUDIO_SET = "audio_rotate"
    SYNTHESIZED_SPEECH = "tts"


class ConnectionStatus(Enum):
    """Transport-reported status of a single voice session"""
    CONNECTING = "CONNECTING"
    SIGNALLING = "SIGNALLING"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"
    DESTROYED = "DESTROYED"


class GuildConnectionState(Enum):
    """Session manager's view of one guild"""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    READY = "READY"
    RECONNECTING = "RECONNECTING"


class PlayerStatus(Enum):
    """Playback engine status"""
    IDLE = "IDLE"
    PLAYING = "PLAYING"


class Outcome(Enum):
    """Result of one (event, channel) execution"""
    PLAYED = "played"
    SKIPPED_MAINTENANCE = "skipped:maintenance"
    SKIPPED_EMPTY = "skipped:no_users"
    CHANNEL_NOT_FOUND = "failed:channel_not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class EventDefinition:
    """A scheduled reminder, immutable for the process lifetime"""
    name: str
    cron: str
    kind: EventKind
    content: str
    enabled: bool = True
    require_occupancy: bool = True


@dataclass(frozen=True)
class Participant:
    """A member currently present in a voice channel"""
    id: str
    name: str = ""
    is_automated: bool = False


@dataclass
class ChannelInfo:
    """Voice channel as returned by the channel directory"""
    id: str
    guild_id: str
    name: str = ""
    members: List[Participant] = field(default_factory=list)
    handle: Optional[Any] = None

    @property
    def human_count(self) -> int:
        """Number of members that are not automated accounts"""
        return sum(1 for member in self.members if not member.is_automated)


@dataclass
class ExecutionResult:
    """Timing and outcome of one (event, channel) execution"""
    event_name: str
    channel_id: str
    outcome: Optional[Outcome] = None
    audio_path: Optional[str] = None
    connect_ms: Optional[int] = None
    play_ms: Optional[int] = None
    total_duration_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def played(self) -> bool:
        return self.outcome is Outcome.PLAYED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "event": self.event_name,
            "channel_id": self.channel_id,
            "outcome": self.outcome.value if self.outcome else None,
            "audio_path": self.audio_path,
            "connect_ms": self.connect_ms,
            "play_ms": self.play_ms,
            "total_duration_ms": self.total_duration_ms,
            "error": self.error,
        }
