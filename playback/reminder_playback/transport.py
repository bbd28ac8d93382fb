"""
Voice transport: session state machine, waiting helpers and the discord.py adapter
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

import discord

from .errors import ConnectFailure, LookupFailed, PlaybackError
from .models import ChannelInfo, ConnectionStatus, Participant

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionStatus, ConnectionStatus], None]

_background_tasks: Set[asyncio.Task] = set()


def _spawn(coro: Awaitable) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class VoiceSession:
    """
    A transport connection to one guild's voice channel.

    Status changes are delivered synchronously to registered listeners as
    (old, new) pairs. DESTROYED is terminal.
    """

    def __init__(self, guild_id: str, channel_id: str):
        self.guild_id = guild_id
        self.channel_id = channel_id
        self.status = ConnectionStatus.CONNECTING
        self._listeners: List[StateListener] = []

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _transition(self, new_status: ConnectionStatus) -> None:
        old_status = self.status
        if old_status is new_status or old_status is ConnectionStatus.DESTROYED:
            return
        self.status = new_status
        for listener in list(self._listeners):
            try:
                listener(old_status, new_status)
            except Exception:
                logger.exception(f"Voice state listener failed for guild {self.guild_id}")

    def subscribe(self, engine) -> None:
        """Route the playback engine's output to this session"""
        engine.attach(self)

    def play(self, source, after: Callable[[Optional[Exception]], None]) -> None:
        raise NotImplementedError

    def stop_playing(self) -> None:
        raise NotImplementedError

    def destroy(self) -> None:
        self._transition(ConnectionStatus.DESTROYED)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} guild={self.guild_id} channel={self.channel_id} status={self.status.value}>"


async def enters_state(session: VoiceSession, status: ConnectionStatus, timeout_s: float) -> VoiceSession:
    """
    Wait until session reports status.

    Raises:
        asyncio.TimeoutError: status not reached within timeout_s
        ConnectFailure: session was destroyed while waiting
    """
    if session.status is status:
        return session
    if session.status is ConnectionStatus.DESTROYED:
        raise ConnectFailure(f"Voice session for guild {session.guild_id} is already destroyed")

    loop = asyncio.get_running_loop()
    reached: asyncio.Future = loop.create_future()

    def listener(old: ConnectionStatus, new: ConnectionStatus) -> None:
        if reached.done():
            return
        if new is status:
            reached.set_result(session)
        elif new is ConnectionStatus.DESTROYED:
            reached.set_exception(ConnectFailure(
                f"Voice session for guild {session.guild_id} destroyed while waiting for {status.value}"
            ))

    session.on_state_change(listener)
    try:
        return await asyncio.wait_for(reached, timeout_s)
    finally:
        session.remove_state_listener(listener)


async def first_of(*waits: Awaitable):
    """
    Return the result of the first wait that succeeds.

    Remaining waits are cancelled. If every wait fails, the last failure is
    raised.
    """
    tasks = [asyncio.ensure_future(w) for w in waits]
    pending = set(tasks)
    last_error: Optional[BaseException] = None
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is None:
                    return task.result()
                last_error = task.exception()
        raise last_error
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        # let cancelled waits detach their state listeners before returning
        await asyncio.gather(*tasks, return_exceptions=True)


class DiscordVoiceSession(VoiceSession):
    """VoiceSession backed by a discord.py VoiceClient"""

    def __init__(self, channel, connect_timeout_s: float = 30.0, poll_interval_s: float = 1.0):
        super().__init__(str(channel.guild.id), str(channel.id))
        self._channel = channel
        self._connect_timeout_s = connect_timeout_s
        self._poll_interval_s = poll_interval_s
        self.voice_client: Optional[discord.VoiceClient] = None
        self._task = _spawn(self._run())

    async def _run(self) -> None:
        stale = self._channel.guild.voice_client
        if stale is not None:
            logger.debug(f"Dropping stale voice client in guild {self.guild_id}")
            await stale.disconnect(force=True)

        try:
            self.voice_client = await self._channel.connect(
                timeout=self._connect_timeout_s,
                reconnect=True,
                self_deaf=True,
                self_mute=False,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Voice connect failed for channel {self.channel_id}: {e}",
                         extra={"channel_id": self.channel_id})
            self._transition(ConnectionStatus.DISCONNECTED)
            return

        if self.status is ConnectionStatus.DESTROYED:
            await self.voice_client.disconnect(force=True)
            return

        self._transition(ConnectionStatus.READY)
        await self._watch()

    async def _watch(self) -> None:
        # discord.py reconnects internally; surface that as status changes
        connected = True
        while self.status is not ConnectionStatus.DESTROYED:
            await asyncio.sleep(self._poll_interval_s)
            vc = self.voice_client
            if vc is None:
                return
            now_connected = vc.is_connected()
            if connected and not now_connected:
                self._transition(ConnectionStatus.DISCONNECTED)
            elif not connected and now_connected:
                self._transition(ConnectionStatus.SIGNALLING)
                self._transition(ConnectionStatus.READY)
            connected = now_connected

    def play(self, source, after: Callable[[Optional[Exception]], None]) -> None:
        vc = self.voice_client
        if vc is None or not vc.is_connected():
            raise PlaybackError(f"Voice session for guild {self.guild_id} is not connected")
        vc.play(source, after=after)

    def stop_playing(self) -> None:
        vc = self.voice_client
        if vc is not None and (vc.is_playing() or vc.is_paused()):
            vc.stop()

    def destroy(self) -> None:
        if self.status is ConnectionStatus.DESTROYED:
            return
        super().destroy()
        if not self._task.done():
            self._task.cancel()
        vc, self.voice_client = self.voice_client, None
        if vc is not None:
            if vc.is_playing():
                vc.stop()
            _spawn(vc.disconnect(force=True))


class DiscordVoiceTransport:
    """Opens DiscordVoiceSessions and remembers the live one per guild"""

    def __init__(self, connect_timeout_s: float = 30.0, poll_interval_s: float = 1.0):
        self.connect_timeout_s = connect_timeout_s
        self.poll_interval_s = poll_interval_s
        self._sessions: Dict[str, VoiceSession] = {}

    def open(self, channel: ChannelInfo) -> VoiceSession:
        if channel.handle is None:
            raise ConnectFailure(f"Channel {channel.id} has no voice handle")
        session = DiscordVoiceSession(channel.handle, self.connect_timeout_s, self.poll_interval_s)
        self._sessions[session.guild_id] = session

        def forget(old: ConnectionStatus, new: ConnectionStatus) -> None:
            if new is ConnectionStatus.DESTROYED and self._sessions.get(session.guild_id) is session:
                del self._sessions[session.guild_id]

        session.on_state_change(forget)
        return session

    def lookup_existing(self, guild_id: str) -> Optional[VoiceSession]:
        session = self._sessions.get(guild_id)
        if session is None or session.status is ConnectionStatus.DESTROYED:
            return None
        return session


class DiscordChannelDirectory:
    """Channel lookups through a discord.py client"""

    def __init__(self, client: discord.Client):
        self.client = client

    async def fetch_channel(self, channel_id: str) -> Optional[ChannelInfo]:
        """
        Return the voice channel, or None when it does not exist or is not voice.

        Raises:
            LookupFailed: the API call failed
        """
        try:
            channel = self.client.get_channel(int(channel_id))
            if channel is None:
                channel = await self.client.fetch_channel(int(channel_id))
        except discord.NotFound:
            return None
        except (discord.HTTPException, discord.InvalidData, ValueError) as e:
            raise LookupFailed(f"Failed to fetch channel {channel_id}: {e}") from e

        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            return None

        return ChannelInfo(
            id=str(channel.id),
            guild_id=str(channel.guild.id),
            name=channel.name,
            members=[
                Participant(id=str(member.id), name=member.display_name, is_automated=member.bot)
                for member in channel.members
            ],
            handle=channel,
        )
