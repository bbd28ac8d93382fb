"""
Shared playback engine and the playback driver
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import discord

from .errors import AudioFileNotFound, PlaybackError
from .models import PlayerStatus

logger = logging.getLogger(__name__)

# Raw Opus files are sent without re-encoding. Ogg may hold Vorbis, so it is transcoded
PASSTHROUGH_EXTENSIONS = (".opus",)

StatusListener = Callable[[PlayerStatus, PlayerStatus], None]
ErrorListener = Callable[[PlaybackError], None]


@dataclass
class AudioResource:
    """One playable file and its discord.py audio source"""
    path: str
    source: Any
    passthrough: bool = False

    @property
    def title(self) -> str:
        return os.path.basename(self.path)


FinishListener = Callable[[AudioResource], None]


def create_audio_resource(path: str) -> AudioResource:
    """Build an ffmpeg-backed source, copying Opus streams and transcoding everything else"""
    if path.lower().endswith(PASSTHROUGH_EXTENSIONS):
        return AudioResource(path, discord.FFmpegOpusAudio(path, codec="copy"), passthrough=True)
    return AudioResource(path, discord.FFmpegPCMAudio(path, options="-vn"), passthrough=False)


class AudioEngine:
    """
    Process-wide player shared by every voice session.

    Each subscribed session carries at most one active resource, so channels
    in different guilds play side by side. Submitting to a session that is
    already playing preempts its resource. Finish callbacks from discord.py's
    audio thread are marshalled back onto the event loop.
    """

    def __init__(self):
        self.status = PlayerStatus.IDLE
        self.subscribers: Dict[str, Any] = {}
        self._active: Dict[str, Tuple[Any, AudioResource]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._status_listeners: List[StatusListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._finish_listeners: List[FinishListener] = []

    def attach(self, session) -> None:
        # a guild has one session; a newer one replaces it
        self.subscribers[session.guild_id] = session

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def remove_error_listener(self, listener: ErrorListener) -> None:
        if listener in self._error_listeners:
            self._error_listeners.remove(listener)

    def add_finish_listener(self, listener: FinishListener) -> None:
        self._finish_listeners.append(listener)

    def remove_finish_listener(self, listener: FinishListener) -> None:
        if listener in self._finish_listeners:
            self._finish_listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._status_listeners) + len(self._error_listeners) + len(self._finish_listeners)

    @property
    def active(self) -> Dict[str, AudioResource]:
        """Resources currently playing, by guild id"""
        return {guild_id: resource for guild_id, (_, resource) in self._active.items()}

    def _set_status(self, new_status: PlayerStatus) -> None:
        old_status = self.status
        self.status = new_status
        if old_status is new_status:
            return
        for listener in list(self._status_listeners):
            listener(old_status, new_status)

    def _settle_status(self) -> None:
        self._set_status(PlayerStatus.PLAYING if self._active else PlayerStatus.IDLE)

    def _notify_finished(self, resource: AudioResource) -> None:
        for listener in list(self._finish_listeners):
            listener(resource)

    def submit(self, resource: AudioResource, session) -> None:
        """
        Start playing resource on a subscribed session.

        Raises:
            PlaybackError: session is not subscribed or it refused the source
        """
        if self.subscribers.get(session.guild_id) is not session:
            raise PlaybackError(f"Voice session for guild {session.guild_id} is not subscribed", resource)

        self._loop = asyncio.get_running_loop()
        if session.guild_id in self._active:
            logger.debug(f"Preempting {self._active[session.guild_id][1].title} with {resource.title}")
            self._halt(session.guild_id)

        self._active[session.guild_id] = (session, resource)

        def after(error: Optional[Exception]) -> None:
            self._loop.call_soon_threadsafe(self._on_finished, session, resource, error)

        try:
            session.play(resource.source, after=after)
        except Exception as e:
            del self._active[session.guild_id]
            cleanup = getattr(resource.source, "cleanup", None)
            if cleanup is not None:
                cleanup()
            self._settle_status()
            if isinstance(e, PlaybackError):
                raise
            raise PlaybackError(f"Could not start playback of {resource.title}: {e}", resource) from e

        self._set_status(PlayerStatus.PLAYING)

    def _halt(self, guild_id: str) -> None:
        session, resource = self._active.pop(guild_id)
        session.stop_playing()
        self._notify_finished(resource)

    def _on_finished(self, session, resource: AudioResource, error: Optional[Exception]) -> None:
        slot = self._active.get(session.guild_id)
        if slot is None or slot[0] is not session or slot[1] is not resource:
            # preempted or stopped; its completion is already accounted for
            return
        del self._active[session.guild_id]
        if error is not None:
            failure = PlaybackError(f"Audio player error on {resource.title}: {error}", resource)
            logger.error(str(failure))
            for listener in list(self._error_listeners):
                listener(failure)
        self._notify_finished(resource)
        self._settle_status()

    def stop(self) -> None:
        """Halt every active resource immediately"""
        for guild_id in list(self._active):
            logger.info(f"Stopping playback of {self._active[guild_id][1].title}")
            self._halt(guild_id)
        self._set_status(PlayerStatus.IDLE)

    def destroy(self) -> None:
        self.stop()
        self.subscribers.clear()
        self._status_listeners.clear()
        self._error_listeners.clear()
        self._finish_listeners.clear()


class PlaybackDriver:
    """Plays files through the shared AudioEngine, one per session at a time"""

    def __init__(self, engine: AudioEngine,
                 resource_factory: Callable[[str], AudioResource] = create_audio_resource):
        self.engine = engine
        self.resource_factory = resource_factory

    async def play_file(self, path: str, session) -> None:
        """
        Play path on session and return once that session's playback ends.

        Args:
            path: Local audio file
            session: VoiceSession to route audio to

        Raises:
            AudioFileNotFound: path does not exist
            PlaybackError: the engine reported an error for this resource
        """
        if not os.path.exists(path):
            raise AudioFileNotFound(path)

        resource = self.resource_factory(path)
        finished = asyncio.get_running_loop().create_future()

        def on_finish(done: AudioResource) -> None:
            if done is resource and not finished.done():
                finished.set_result(None)

        def on_error(error: PlaybackError) -> None:
            if error.resource is resource and not finished.done():
                finished.set_exception(error)

        self.engine.add_finish_listener(on_finish)
        self.engine.add_error_listener(on_error)
        try:
            session.subscribe(self.engine)
            self.engine.submit(resource, session)
            logger.info(f"Playing audio: {resource.title}")
            await finished
            logger.debug(f"Finished playing: {resource.title}")
        finally:
            self.engine.remove_finish_listener(on_finish)
            self.engine.remove_error_listener(on_error)

    def stop(self) -> None:
        self.engine.stop()

    def destroy(self) -> None:
        self.engine.destroy()
