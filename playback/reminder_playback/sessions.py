"""
Channel session manager: one voice session per guild
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from .config import Timings
from .errors import ConnectFailure, ConnectTimeout, ReminderPlaybackError
from .logging_utils import log_session_state_change
from .models import ChannelInfo, ConnectionStatus, GuildConnectionState
from .transport import VoiceSession, enters_state, first_of

logger = logging.getLogger(__name__)


class VoiceSessionManager:
    """
    Owns the guild -> session map.

    Every check-and-mutate on the map happens between await points, so the
    single event loop needs no locks. Failed connects are never retried here.
    """

    def __init__(self, transport, timings: Optional[Timings] = None):
        """
        Args:
            transport: object with `open(ChannelInfo) -> VoiceSession` and
                `lookup_existing(guild_id) -> VoiceSession | None`
            timings: connect, reconnect and disconnect timings
        """
        self.transport = transport
        self.timings = timings or Timings()
        self._sessions: Dict[str, VoiceSession] = {}
        self._reconnecting: Set[str] = set()
        self._recovery_tasks: Dict[str, asyncio.Task] = {}
        self._pending_disconnects: Dict[str, asyncio.TimerHandle] = {}

    async def connect(self, channel: ChannelInfo) -> VoiceSession:
        """
        Return a ready session for channel, reusing the guild's session when
        it already targets the same channel.

        Raises:
            ConnectTimeout: session not ready within the connect timeout
            ConnectFailure: transport could not open the session, or it was
                destroyed while connecting
        """
        guild_id = channel.guild_id
        session = self._sessions.get(guild_id)

        if session is None:
            session = self._adopt_existing(channel)

        if session is not None:
            if session.channel_id == channel.id:
                self._cancel_pending_disconnect(guild_id)
                logger.debug(f"Reusing voice session for guild {guild_id}")
                return await self._wait_ready(session, channel)
            logger.info(f"Switching guild {guild_id} from channel {session.channel_id} to {channel.id}")
            self._teardown(guild_id)

        self._cancel_pending_disconnect(guild_id)
        try:
            session = self.transport.open(channel)
        except ReminderPlaybackError:
            raise
        except Exception as e:
            raise ConnectFailure(f"Could not open voice session for channel {channel.id}: {e}") from e

        # Recorded before the first await so a concurrent connect sees it
        self._track(session)
        logger.info(f"Connecting to voice channel {channel.name or channel.id} in guild {guild_id}")
        return await self._wait_ready(session, channel)

    def _adopt_existing(self, channel: ChannelInfo) -> Optional[VoiceSession]:
        existing = self.transport.lookup_existing(channel.guild_id)
        if existing is None or existing.status is ConnectionStatus.DESTROYED:
            return None
        logger.debug(f"Adopting untracked voice session in guild {channel.guild_id}")
        self._track(existing)
        return existing

    async def _wait_ready(self, session: VoiceSession, channel: ChannelInfo) -> VoiceSession:
        timeout_s = self.timings.connect_timeout_s
        try:
            await enters_state(session, ConnectionStatus.READY, timeout_s)
        except asyncio.TimeoutError as e:
            logger.error(f"Voice connection to {channel.id} timed out after {timeout_s:g}s",
                         extra={"channel_id": channel.id})
            session.destroy()
            raise ConnectTimeout(channel.id, timeout_s) from e
        logger.info(f"Voice connection ready in guild {channel.guild_id}")
        return session

    def _track(self, session: VoiceSession) -> None:
        guild_id = session.guild_id

        def observe(old: ConnectionStatus, new: ConnectionStatus) -> None:
            log_session_state_change(logger, guild_id, old.value, new.value, channel_id=session.channel_id)
            if self._sessions.get(guild_id) is not session:
                return
            if new is ConnectionStatus.DISCONNECTED:
                self._begin_recovery(session)
            elif new is ConnectionStatus.DESTROYED:
                self._forget(guild_id)

        session.on_state_change(observe)
        self._sessions[guild_id] = session

    def _begin_recovery(self, session: VoiceSession) -> None:
        guild_id = session.guild_id
        if guild_id in self._reconnecting:
            logger.debug(f"Reconnection already in progress for guild {guild_id}")
            return
        self._reconnecting.add(guild_id)
        self._recovery_tasks[guild_id] = asyncio.ensure_future(self._recover(session))

    async def _recover(self, session: VoiceSession) -> None:
        guild_id = session.guild_id
        grace = self.timings.reconnect_grace_s
        logger.warning(f"Voice connection lost in guild {guild_id}, waiting for reconnection")
        try:
            await first_of(
                enters_state(session, ConnectionStatus.SIGNALLING, grace),
                enters_state(session, ConnectionStatus.CONNECTING, grace),
            )
            logger.info(f"Voice connection renegotiating in guild {guild_id}")
        except (asyncio.TimeoutError, ConnectFailure):
            logger.warning(f"Voice connection in guild {guild_id} lost permanently")
            if self._sessions.get(guild_id) is session:
                self._teardown(guild_id)
        finally:
            self._reconnecting.discard(guild_id)
            if self._recovery_tasks.get(guild_id) is asyncio.current_task():
                del self._recovery_tasks[guild_id]

    def _forget(self, guild_id: str) -> None:
        self._sessions.pop(guild_id, None)
        self._cancel_pending_disconnect(guild_id)
        task = self._recovery_tasks.pop(guild_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._reconnecting.discard(guild_id)

    def _teardown(self, guild_id: str) -> None:
        session = self._sessions.get(guild_id)
        self._forget(guild_id)
        if session is not None:
            session.destroy()
            logger.info(f"Disconnected from voice in guild {guild_id}")

    def _cancel_pending_disconnect(self, guild_id: str) -> None:
        handle = self._pending_disconnects.pop(guild_id, None)
        if handle is not None:
            handle.cancel()
            logger.debug(f"Cancelled pending disconnect for guild {guild_id}")

    def disconnect(self, guild_id: str) -> None:
        """
        Schedule teardown of the guild's session after the disconnect delay.

        A second call while teardown is pending is a no-op.
        """
        session = self._sessions.get(guild_id)
        if session is None:
            logger.debug(f"No voice session to disconnect in guild {guild_id}")
            return
        if guild_id in self._pending_disconnects:
            logger.debug(f"Disconnect already scheduled for guild {guild_id}")
            return

        delay = self.timings.disconnect_delay_s
        loop = asyncio.get_running_loop()
        self._pending_disconnects[guild_id] = loop.call_later(delay, self._delayed_teardown, guild_id, session)
        logger.debug(f"Disconnect scheduled for guild {guild_id} in {delay:g}s")

    def _delayed_teardown(self, guild_id: str, session: VoiceSession) -> None:
        self._pending_disconnects.pop(guild_id, None)
        if self._sessions.get(guild_id) is session:
            self._teardown(guild_id)

    def disconnect_all(self) -> None:
        """Tear down every session immediately"""
        for handle in self._pending_disconnects.values():
            handle.cancel()
        self._pending_disconnects.clear()
        for guild_id in list(self._sessions):
            self._teardown(guild_id)
        logger.info("All voice sessions closed")

    def cleanup(self) -> None:
        self.disconnect_all()

    def is_connected(self, guild_id: str) -> bool:
        session = self._sessions.get(guild_id)
        return session is not None and session.status is ConnectionStatus.READY

    def get_session(self, guild_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(guild_id)

    def state(self, guild_id: str) -> GuildConnectionState:
        session = self._sessions.get(guild_id)
        if session is None:
            return GuildConnectionState.DISCONNECTED
        if guild_id in self._reconnecting or session.status is ConnectionStatus.DISCONNECTED:
            return GuildConnectionState.RECONNECTING
        if session.status is ConnectionStatus.READY:
            return GuildConnectionState.READY
        return GuildConnectionState.CONNECTING

    def states(self) -> Dict[str, GuildConnectionState]:
        return {guild_id: self.state(guild_id) for guild_id in self._sessions}
