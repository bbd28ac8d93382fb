"""
Exception taxonomy for reminder playback
"""

from typing import List, Optional


class ReminderPlaybackError(Exception):
    """Base class for every failure raised by the reminder pipeline"""


class ConfigError(ReminderPlaybackError):
    """Configuration could not be loaded or is malformed"""


class ConfigMissing(ConfigError):
    """One or more required settings are absent"""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required environment variables: {', '.join(self.missing)}")


class ConnectTimeout(ReminderPlaybackError):
    """Voice session did not reach the ready state in time"""

    def __init__(self, channel_id: str, timeout_s: float):
        self.channel_id = channel_id
        self.timeout_s = timeout_s
        super().__init__(f"Voice connection to channel {channel_id} not ready after {timeout_s:g}s")


class ConnectFailure(ReminderPlaybackError):
    """Voice session could not be opened"""


class AudioFileNotFound(ReminderPlaybackError, FileNotFoundError):
    """Audio asset does not exist on disk at play time"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Audio file not found: {path}")


class ContentNotFound(ReminderPlaybackError):
    """Rotation set is unknown or empty"""


class SynthesisFailed(ReminderPlaybackError):
    """Speech synthesis did not produce audio"""


class PlaybackError(ReminderPlaybackError):
    """Playback engine reported a failure while playing a resource"""

    def __init__(self, message: str, resource: Optional[object] = None):
        self.resource = resource
        super().__init__(message)


class LookupFailed(ReminderPlaybackError):
    """Channel directory lookup failed"""
