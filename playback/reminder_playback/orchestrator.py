"""
Event scheduler: cron registration and the per-channel execution pipeline
"""

import asyncio
import os
import time
from datetime import datetime, tzinfo
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .assets import AssetResolver
from .config import ReminderConfig
from .errors import SynthesisFailed
from .events import get_enabled_events, get_event_by_name, validate_events
from .logging_utils import get_logger, log_error, log_execution, log_phase_end, log_phase_start
from .models import EventDefinition, EventKind, ExecutionResult, Outcome
from .occupancy import OccupancyGate
from .player import PlaybackDriver
from .sessions import VoiceSessionManager
from .tts import SpeechCache

logger = get_logger(__name__)

# Cron numbering: 0 and 7 are both Sunday
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _translate_day_of_week(field: str) -> str:
    """Rewrite a numeric cron day-of-week field as APScheduler day names"""
    if not any(ch.isdigit() for ch in field):
        return field

    days: List[str] = []
    for part in field.split(","):
        base, _, step = part.partition("/")
        step_n = int(step) if step else 1
        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            low, high = base.split("-", 1)
            start, end = int(low), int(high)
        else:
            start = int(base)
            end = 6 if step else start
        if not 0 <= start <= end <= 7 or step_n < 1:
            raise ValueError(f"invalid day-of-week field {field!r}")
        for day in range(start, end + 1, step_n):
            name = _CRON_WEEKDAYS[day]
            if name not in days:
                days.append(name)
    return ",".join(days)


def parse_cron_expression(expression: str, tz: Optional[tzinfo] = None) -> CronTrigger:
    """
    Build a CronTrigger from a six-field (seconds first) or five-field cron expression.

    Raises:
        ValueError: wrong field count or a field APScheduler rejects
    """
    fields = expression.split()
    if len(fields) == 5:
        fields = ["0"] + fields
    if len(fields) != 6:
        raise ValueError(f"expected 5 or 6 fields, got {len(fields)}")

    second, minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_translate_day_of_week(day_of_week),
        timezone=tz,
    )


def next_fire_time(expression: str, tz: Optional[tzinfo] = None,
                   now: Optional[datetime] = None) -> Optional[datetime]:
    """Next time expression fires after now; None when it never fires again"""
    now = now or datetime.now(tz)
    return parse_cron_expression(expression, tz).get_next_fire_time(None, now)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ReminderScheduler:
    """Registers one cron job per event and runs every firing against all channels"""

    def __init__(self, config: ReminderConfig, events: List[EventDefinition], gate: OccupancyGate,
                 directory, sessions: VoiceSessionManager, driver: PlaybackDriver,
                 resolver: AssetResolver, speech_cache: SpeechCache,
                 job_scheduler: Optional[AsyncIOScheduler] = None):
        """
        Initialize the reminder scheduler.

        Args:
            config: Reminder configuration
            events: Every known event, enabled or not
            gate: Maintenance and occupancy checks
            directory: Channel lookups (`async fetch_channel(channel_id)`)
            sessions: Per-guild voice session manager
            driver: Playback driver sharing the process-wide engine
            resolver: Event content to file path
            speech_cache: Used for startup pre-generation
            job_scheduler: APScheduler instance; created on first use when omitted
        """
        self.config = config
        self.events = validate_events(events)
        self.gate = gate
        self.directory = directory
        self.sessions = sessions
        self.driver = driver
        self.resolver = resolver
        self.speech_cache = speech_cache
        self.pregenerated_audio: Dict[str, str] = {}
        self._job_scheduler = job_scheduler

    @property
    def job_scheduler(self) -> AsyncIOScheduler:
        # AsyncIOScheduler binds to the loop running when it is started
        if self._job_scheduler is None:
            self._job_scheduler = AsyncIOScheduler(timezone=self.config.tzinfo)
        return self._job_scheduler

    async def initialize(self) -> None:
        """Pre-generate speech, then register and start every enabled event"""
        enabled = get_enabled_events(self.events)
        logger.info(f"Initializing scheduler with {len(enabled)} enabled events")

        await self._pregenerate_speech(enabled)

        scheduled = sum(1 for event in enabled if self.schedule_event(event))
        if not self.job_scheduler.running:
            self.job_scheduler.start()
        logger.info(f"Scheduler initialized: {scheduled}/{len(enabled)} events scheduled "
                    f"for {len(self.config.channel_ids)} channels")

    async def _pregenerate_speech(self, events: List[EventDefinition]) -> None:
        speech_events = [event for event in events if event.kind is EventKind.SYNTHESIZED_SPEECH]
        if not speech_events:
            return
        logger.info(f"Pre-generating TTS audio for {len(speech_events)} events")
        # Serial on purpose: no two syntheses race for the same cache file
        for event in speech_events:
            try:
                self.pregenerated_audio[event.name] = await self.speech_cache.generate(event.content)
            except SynthesisFailed as e:
                logger.error(f"Failed to pre-generate TTS for {event.name}: {e}",
                             extra={"event_name": event.name})

    def schedule_event(self, event: EventDefinition) -> bool:
        """Register a cron job for event; invalid expressions are logged and skipped"""
        try:
            trigger = parse_cron_expression(event.cron, self.config.tzinfo)
        except ValueError as e:
            logger.error(f"Invalid cron expression for {event.name}: {event.cron} ({e})",
                         extra={"event_name": event.name})
            return False

        self.job_scheduler.add_job(
            self._run_scheduled,
            trigger,
            args=[event],
            id=event.name,
            name=event.name,
            replace_existing=True,
            misfire_grace_time=self.config.timings.misfire_grace_s,
            coalesce=True,
        )
        logger.info(f"Scheduled: {event.name} ({event.cron})", extra={"event_name": event.name})
        return True

    async def _run_scheduled(self, event: EventDefinition) -> None:
        logger.info(f"Event triggered: {event.name}", extra={"event_name": event.name})
        await self._execute_event_for_all_channels(event)

    async def _execute_event_for_all_channels(self, event: EventDefinition) -> List[ExecutionResult]:
        """Run event on every configured channel concurrently and collect each outcome"""
        channel_ids = list(self.config.channel_ids)
        outcomes = await asyncio.gather(
            *(self._execute_event_for_channel(event, channel_id) for channel_id in channel_ids),
            return_exceptions=True,
        )

        results = []
        for channel_id, outcome in zip(channel_ids, outcomes):
            if isinstance(outcome, BaseException):
                log_error(logger, event.name, channel_id, outcome)
                outcome = ExecutionResult(event.name, channel_id, outcome=Outcome.FAILED, error=str(outcome))
            results.append(outcome)
        return results

    async def _execute_event_for_channel(self, event: EventDefinition, channel_id: str) -> ExecutionResult:
        """
        Gate, connect, settle, resolve, play, then always schedule disconnect.

        Every expected failure ends as a non-played ExecutionResult.
        """
        result = ExecutionResult(event_name=event.name, channel_id=channel_id)
        started = time.monotonic()
        session = None
        phase = "gate"

        try:
            log_phase_start(logger, phase, event.name, channel_id)
            if self.gate.in_maintenance_window():
                logger.info(f"Skipping {event.name}: in maintenance window",
                            extra={"event_name": event.name, "channel_id": channel_id})
                result.outcome = Outcome.SKIPPED_MAINTENANCE
                return result

            if event.require_occupancy and not await self.gate.has_qualifying_participants(channel_id):
                logger.info(f"Skipping {event.name} in {channel_id}: no users in channel",
                            extra={"event_name": event.name, "channel_id": channel_id})
                result.outcome = Outcome.SKIPPED_EMPTY
                return result
            log_phase_end(logger, phase, event.name, channel_id)

            phase = "connect"
            log_phase_start(logger, phase, event.name, channel_id)
            channel = await self.directory.fetch_channel(channel_id)
            if channel is None:
                logger.error(f"Channel {channel_id} not found or not a voice channel",
                             extra={"event_name": event.name, "channel_id": channel_id})
                result.outcome = Outcome.CHANNEL_NOT_FOUND
                return result

            phase_started = time.monotonic()
            session = await self.sessions.connect(channel)
            result.connect_ms = _elapsed_ms(phase_started)
            log_phase_end(logger, phase, event.name, channel_id, result.connect_ms)

            phase = "settle"
            await asyncio.sleep(self.config.timings.settle_delay_s)

            phase = "resolve"
            audio_path = self.pregenerated_audio.get(event.name)
            if audio_path is None or not os.path.exists(audio_path):
                audio_path = await self.resolver.resolve(event)
            result.audio_path = audio_path

            phase = "play"
            log_phase_start(logger, phase, event.name, channel_id, audio_path=audio_path)
            phase_started = time.monotonic()
            await self.driver.play_file(audio_path, session)
            result.play_ms = _elapsed_ms(phase_started)
            log_phase_end(logger, phase, event.name, channel_id, result.play_ms)

            result.outcome = Outcome.PLAYED
            logger.info(f"Played {event.name} in channel {channel_id}",
                        extra={"event_name": event.name, "channel_id": channel_id})

        except Exception as e:
            result.outcome = Outcome.FAILED
            result.error = str(e)
            log_error(logger, event.name, channel_id, e, {"phase": phase})

        finally:
            if session is not None:
                self.sessions.disconnect(session.guild_id)
            result.total_duration_ms = _elapsed_ms(started)
            log_execution(logger, result)

        return result

    async def trigger_event(self, event_name: str) -> Optional[List[ExecutionResult]]:
        """Run one event now on every channel, outside the cron schedule"""
        event = get_event_by_name(self.events, event_name)
        if event is None:
            logger.error(f"Event not found: {event_name}")
            return None
        logger.info(f"Manually triggering event: {event_name}", extra={"event_name": event_name})
        return await self._execute_event_for_all_channels(event)

    def stop_all(self) -> None:
        if self._job_scheduler is None:
            return
        self._job_scheduler.remove_all_jobs()
        logger.info("All scheduled jobs stopped")

    def shutdown(self) -> None:
        """
        Stop timers, halt playback and tear down every voice session.

        AsyncIOScheduler.shutdown is deferred onto the event loop, so the job
        scheduler reports running until the loop next gets control.
        """
        logger.info("Shutting down reminder scheduler")
        self.stop_all()
        if self._job_scheduler is not None and self._job_scheduler.running:
            self._job_scheduler.shutdown(wait=False)
        self.driver.stop()
        self.driver.destroy()
        self.sessions.disconnect_all()
