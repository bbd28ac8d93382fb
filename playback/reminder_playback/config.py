"""
Configuration models for reminder playback system
"""

import logging
import os
import re
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError, ConfigMissing

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Mexico_City"
DEFAULT_MAINTENANCE_WINDOWS = "tue 13:30-19:30"

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

_WINDOW_RE = re.compile(
    r"^(?P<day>[a-z]{3})[a-z]*\s+(?P<sh>\d{1,2}):(?P<sm>\d{2})\s*-\s*(?P<eh>\d{1,2}):(?P<em>\d{2})$"
)


def parse_channel_ids(value: Optional[str]) -> List[str]:
    """Split a comma separated channel list, dropping blanks"""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class MaintenanceWindow(BaseModel):
    """Weekly blackout interval [start, end) in minutes of the local day"""
    weekday: int = Field(..., ge=0, le=6, description="0=Monday .. 6=Sunday")
    start_minute: int = Field(..., ge=0, le=1440, description="Window start, minutes after midnight")
    end_minute: int = Field(..., ge=0, le=1440, description="Window end (exclusive)")

    @model_validator(mode="after")
    def _check_order(self) -> "MaintenanceWindow":
        if self.end_minute <= self.start_minute:
            raise ValueError("maintenance window must end after it starts")
        return self

    @classmethod
    def parse(cls, text: str) -> "MaintenanceWindow":
        """Parse 'tue 13:30-19:30'"""
        match = _WINDOW_RE.match(text.strip().lower())
        if not match or match.group("day") not in WEEKDAYS:
            raise ConfigError(f"Invalid maintenance window: {text!r} (expected e.g. 'tue 13:30-19:30')")
        try:
            return cls(
                weekday=WEEKDAYS.index(match.group("day")),
                start_minute=int(match.group("sh")) * 60 + int(match.group("sm")),
                end_minute=int(match.group("eh")) * 60 + int(match.group("em")),
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid maintenance window: {text!r}: {e}") from e

    def contains(self, local_time: datetime) -> bool:
        minute_of_day = local_time.hour * 60 + local_time.minute
        return (
            local_time.weekday() == self.weekday
            and self.start_minute <= minute_of_day < self.end_minute
        )

    def __str__(self) -> str:
        return (
            f"{WEEKDAYS[self.weekday]} "
            f"{self.start_minute // 60:02d}:{self.start_minute % 60:02d}-"
            f"{self.end_minute // 60:02d}:{self.end_minute % 60:02d}"
        )


def parse_maintenance_windows(value: Optional[str]) -> List[MaintenanceWindow]:
    """Parse a ';' separated window list; 'none' or 'off' disables windows"""
    if value is None:
        value = DEFAULT_MAINTENANCE_WINDOWS
    if value.strip().lower() in ("", "none", "off"):
        return []
    return [MaintenanceWindow.parse(part) for part in value.split(";") if part.strip()]


class Timings(BaseModel):
    """Timing configuration for connection and playback orchestration"""
    connect_timeout_s: float = Field(default=30.0, ge=0, le=120.0, description="Wait for a session to become ready")
    reconnect_grace_s: float = Field(default=5.0, ge=0, le=60.0, description="Wait for renegotiation after a drop")
    settle_delay_s: float = Field(default=0.5, ge=0, le=10.0, description="Pause between ready and playback")
    disconnect_delay_s: float = Field(default=5.0, ge=0, le=300.0, description="Grace before teardown after playback")
    misfire_grace_s: int = Field(default=30, ge=1, le=600, description="How late a cron fire may still run")
    voice_poll_interval_s: float = Field(default=1.0, ge=0.05, le=10.0, description="Voice link health poll period")


class SpeechSettings(BaseModel):
    """Default speech synthesis parameters"""
    voice: str = Field(default="es-MX-DaliaNeural", description="Edge TTS voice name")
    rate: str = Field(default="+0%", description="Rate adjustment (-50% to +50%)")
    pitch: str = Field(default="+0Hz", description="Pitch adjustment")


class ReminderConfig(BaseModel):
    """Main configuration for the reminder playback system"""
    token: str = Field(default="", description="Discord bot token")
    channel_ids: List[str] = Field(default_factory=list, description="Voice channels every event targets")
    audio_dir: str = Field(default="./audio", description="Pre-recorded audio directory")
    cache_dir: str = Field(default="./cache", description="Synthesized speech cache directory")
    timezone: str = Field(default=DEFAULT_TIMEZONE, description="Zone for schedules and maintenance windows")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (text|json|simple)")
    timings: Timings = Field(default_factory=Timings, description="Timing configuration")
    tts: SpeechSettings = Field(default_factory=SpeechSettings, description="Speech defaults")
    maintenance_windows: List[MaintenanceWindow] = Field(
        default_factory=lambda: parse_maintenance_windows(DEFAULT_MAINTENANCE_WINDOWS),
        description="Weekly blackout windows",
    )

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown time zone {value!r}") from e
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls) -> "ReminderConfig":
        """Create configuration from environment variables"""
        load_dotenv()
        try:
            timings = Timings(
                connect_timeout_s=float(os.getenv("CONNECT_TIMEOUT", "30")),
                reconnect_grace_s=float(os.getenv("RECONNECT_GRACE", "5")),
                settle_delay_s=float(os.getenv("SETTLE_DELAY_MS", "500")) / 1000.0,
                disconnect_delay_s=float(os.getenv("DISCONNECT_DELAY", "5")),
            )
            return cls(
                token=os.getenv("DISCORD_TOKEN", ""),
                channel_ids=parse_channel_ids(os.getenv("CHANNEL_IDS") or os.getenv("CHANNEL_ID")),
                audio_dir=os.getenv("AUDIO_DIR", "./audio"),
                cache_dir=os.getenv("CACHE_DIR", "./cache"),
                timezone=os.getenv("TIMEZONE") or os.getenv("TZ") or DEFAULT_TIMEZONE,
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                log_format=os.getenv("LOG_FORMAT", "text"),
                timings=timings,
                tts=SpeechSettings(
                    voice=os.getenv("TTS_VOICE", "es-MX-DaliaNeural"),
                    rate=os.getenv("TTS_RATE", "+0%"),
                    pitch=os.getenv("TTS_PITCH", "+0Hz"),
                ),
                maintenance_windows=parse_maintenance_windows(os.getenv("MAINTENANCE_WINDOWS")),
            )
        except (ValidationError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def validate_required(self) -> None:
        """Raise ConfigMissing naming every absent required setting"""
        missing = []
        if not self.token:
            missing.append("DISCORD_TOKEN")
        if not self.channel_ids:
            missing.append("CHANNEL_IDS")
        if missing:
            raise ConfigMissing(missing)
