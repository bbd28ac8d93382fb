"""
Tests for the discord.py voice session and channel directory adapters
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import discord
import pytest

from reminder_playback.errors import LookupFailed, PlaybackError
from reminder_playback.models import ConnectionStatus
from reminder_playback.transport import DiscordChannelDirectory, DiscordVoiceSession, DiscordVoiceTransport


def voice_channel(channel_id=10, guild_id=20, members=()):
    channel = Mock(spec=discord.VoiceChannel)
    channel.id = channel_id
    channel.name = "General"
    channel.guild = Mock()
    channel.guild.id = guild_id
    channel.guild.voice_client = None
    channel.members = list(members)
    return channel


def member(member_id, bot=False):
    m = Mock()
    m.id = member_id
    m.display_name = f"member {member_id}"
    m.bot = bot
    return m


def voice_client():
    vc = Mock()
    vc.is_connected.return_value = True
    vc.is_playing.return_value = False
    vc.is_paused.return_value = False
    vc.disconnect = AsyncMock()
    return vc


async def settle(seconds=0.0):
    for _ in range(3):
        await asyncio.sleep(0)
    if seconds:
        await asyncio.sleep(seconds)


class TestDiscordVoiceSession:
    """Test status reporting from a discord.py VoiceClient"""

    @pytest.mark.asyncio
    async def test_connect_reports_ready(self):
        """Test connect reports ready"""
        channel = voice_channel()
        vc = voice_client()
        channel.connect = AsyncMock(return_value=vc)

        session = DiscordVoiceSession(channel, connect_timeout_s=5, poll_interval_s=0.02)
        assert session.status is ConnectionStatus.CONNECTING
        await settle()

        assert session.status is ConnectionStatus.READY
        assert (session.guild_id, session.channel_id) == ("20", "10")
        channel.connect.assert_awaited_once_with(timeout=5, reconnect=True, self_deaf=True, self_mute=False)
        session.destroy()

    @pytest.mark.asyncio
    async def test_connect_failure_reports_disconnected(self):
        """Test connect failure reports disconnected"""
        channel = voice_channel()
        channel.connect = AsyncMock(side_effect=asyncio.TimeoutError())

        session = DiscordVoiceSession(channel, connect_timeout_s=5, poll_interval_s=0.02)
        await settle()

        assert session.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_link_drop_and_recovery(self):
        """Test link drop and recovery"""
        channel = voice_channel()
        vc = voice_client()
        channel.connect = AsyncMock(return_value=vc)
        seen = []

        session = DiscordVoiceSession(channel, poll_interval_s=0.02)
        session.on_state_change(lambda old, new: seen.append(new))
        await settle()

        vc.is_connected.return_value = False
        await settle(0.05)
        vc.is_connected.return_value = True
        await settle(0.05)

        assert seen == [
            ConnectionStatus.READY,
            ConnectionStatus.DISCONNECTED,
            ConnectionStatus.SIGNALLING,
            ConnectionStatus.READY,
        ]
        session.destroy()

    @pytest.mark.asyncio
    async def test_destroy_disconnects_voice_client(self):
        """Test destroy disconnects voice client"""
        channel = voice_channel()
        vc = voice_client()
        channel.connect = AsyncMock(return_value=vc)

        session = DiscordVoiceSession(channel, poll_interval_s=0.02)
        await settle()
        session.destroy()
        session.destroy()
        await settle()

        assert session.status is ConnectionStatus.DESTROYED
        vc.disconnect.assert_awaited_once_with(force=True)

    @pytest.mark.asyncio
    async def test_play_requires_connection(self):
        """Test play requires connection"""
        channel = voice_channel()
        channel.connect = AsyncMock(side_effect=asyncio.TimeoutError())
        session = DiscordVoiceSession(channel)
        await settle()

        with pytest.raises(PlaybackError):
            session.play(object(), after=lambda error: None)

    @pytest.mark.asyncio
    async def test_transport_tracks_sessions_per_guild(self):
        """Test transport tracks sessions per guild"""
        channel = voice_channel()
        channel.connect = AsyncMock(return_value=voice_client())
        info = Mock(id="10", guild_id="20", handle=channel)
        transport = DiscordVoiceTransport(poll_interval_s=0.02)

        session = transport.open(info)
        assert transport.lookup_existing("20") is session

        session.destroy()
        assert transport.lookup_existing("20") is None


class TestDiscordChannelDirectory:
    """Test channel lookups"""

    @pytest.mark.asyncio
    async def test_maps_voice_channel_members(self):
        """Test maps voice channel members"""
        channel = voice_channel(members=[member(1), member(2, bot=True)])
        client = Mock()
        client.get_channel.return_value = channel

        info = await DiscordChannelDirectory(client).fetch_channel("10")

        assert info.id == "10"
        assert info.guild_id == "20"
        assert info.handle is channel
        assert info.human_count == 1
        assert [p.is_automated for p in info.members] == [False, True]

    @pytest.mark.asyncio
    async def test_falls_back_to_api_fetch(self):
        """Test falls back to api fetch"""
        channel = voice_channel()
        client = Mock()
        client.get_channel.return_value = None
        client.fetch_channel = AsyncMock(return_value=channel)

        info = await DiscordChannelDirectory(client).fetch_channel("10")

        assert info.handle is channel
        client.fetch_channel.assert_awaited_once_with(10)

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        """Test unknown channel"""
        client = Mock()
        client.get_channel.return_value = None
        client.fetch_channel = AsyncMock(
            side_effect=discord.NotFound(Mock(status=404, reason="Not Found"), "Unknown Channel")
        )

        assert await DiscordChannelDirectory(client).fetch_channel("10") is None

    @pytest.mark.asyncio
    async def test_text_channel_is_not_voice(self):
        """Test text channel is not voice"""
        client = Mock()
        client.get_channel.return_value = Mock(spec=discord.TextChannel)

        assert await DiscordChannelDirectory(client).fetch_channel("10") is None

    @pytest.mark.asyncio
    async def test_api_errors_become_lookup_failed(self):
        """Test api errors become lookup failed"""
        client = Mock()
        client.get_channel.return_value = None
        client.fetch_channel = AsyncMock(
            side_effect=discord.HTTPException(Mock(status=503, reason="Service Unavailable"), "upstream")
        )

        with pytest.raises(LookupFailed):
            await DiscordChannelDirectory(client).fetch_channel("10")

    @pytest.mark.asyncio
    async def test_non_numeric_id(self):
        """Test non numeric id"""
        with pytest.raises(LookupFailed):
            await DiscordChannelDirectory(Mock()).fetch_channel("general")
