"""
discord.py client that wires the reminder pipeline together
"""

import logging
from typing import Dict, List, Optional

import discord

from .assets import AssetResolver
from .config import ReminderConfig
from .events import default_events, default_rotation_sets
from .models import EventDefinition, ExecutionResult
from .occupancy import OccupancyGate
from .orchestrator import ReminderScheduler
from .player import AudioEngine, PlaybackDriver
from .sessions import VoiceSessionManager
from .transport import DiscordChannelDirectory, DiscordVoiceTransport
from .tts import EdgeSpeechSynthesizer, SpeechCache

logger = logging.getLogger(__name__)


def build_intents() -> discord.Intents:
    """Guild and voice-state events are all the bot needs to see channel members"""
    intents = discord.Intents.none()
    intents.guilds = True
    intents.voice_states = True
    return intents


class ReminderBot(discord.Client):
    """
    Voice reminder bot.

    Every collaborator is built once here and handed to the scheduler. With
    oneshot_event set, the bot runs that single event on login, stores the
    results in last_results and closes.
    """

    def __init__(self, config: ReminderConfig, events: Optional[List[EventDefinition]] = None,
                 rotation_sets: Optional[Dict[str, List[str]]] = None,
                 oneshot_event: Optional[str] = None, **options):
        super().__init__(intents=build_intents(), **options)
        self.config = config
        self.events = events if events is not None else default_events(config.audio_dir)
        self.rotation_sets = rotation_sets if rotation_sets is not None else default_rotation_sets(config.audio_dir)
        self.oneshot_event = oneshot_event
        self.last_results: Optional[List[ExecutionResult]] = None
        self.scheduler = self.build_scheduler()
        self._started = False
        self._shut_down = False

    def build_scheduler(self) -> ReminderScheduler:
        config = self.config
        tz = config.tzinfo
        timings = config.timings

        directory = DiscordChannelDirectory(self)
        speech_cache = SpeechCache(config.cache_dir, EdgeSpeechSynthesizer(), config.tts)
        return ReminderScheduler(
            config=config,
            events=self.events,
            gate=OccupancyGate(directory, config.maintenance_windows, tz),
            directory=directory,
            sessions=VoiceSessionManager(
                DiscordVoiceTransport(timings.connect_timeout_s, timings.voice_poll_interval_s),
                timings,
            ),
            driver=PlaybackDriver(AudioEngine()),
            resolver=AssetResolver(self.rotation_sets, speech_cache, tz),
            speech_cache=speech_cache,
        )

    async def on_ready(self) -> None:
        logger.info(f"Bot logged in as {self.user}")
        if self._started:
            # on_ready fires again after a gateway resume
            logger.debug("Gateway session resumed; scheduler already running")
            return
        self._started = True

        if self.oneshot_event is not None:
            try:
                self.last_results = await self.scheduler.trigger_event(self.oneshot_event)
            finally:
                await self.close()
            return

        await self.scheduler.initialize()
        logger.info(f"Monitoring channels: {', '.join(self.config.channel_ids)}")

    async def close(self) -> None:
        if not self._shut_down:
            self._shut_down = True
            self.scheduler.shutdown()
        await super().close()
