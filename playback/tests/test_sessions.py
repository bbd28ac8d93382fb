"""
Tests for the per-guild voice session manager
"""

import asyncio

import pytest

from fakes import FakeSession, FakeTransport, make_channel
from reminder_playback.config import Timings
from reminder_playback.errors import ConnectFailure, ConnectTimeout
from reminder_playback.models import ConnectionStatus, GuildConnectionState
from reminder_playback.sessions import VoiceSessionManager
from reminder_playback.transport import enters_state, first_of

FAST = Timings(connect_timeout_s=0.2, reconnect_grace_s=0.05, settle_delay_s=0, disconnect_delay_s=0.05)


class TestWaitHelpers:
    """Test enters_state and first_of"""

    @pytest.mark.asyncio
    async def test_enters_state_resolves_on_transition(self):
        """Test enters state resolves on transition"""
        session = FakeSession("g", "c")
        asyncio.get_running_loop().call_soon(session.become, ConnectionStatus.READY)
        assert await enters_state(session, ConnectionStatus.READY, 1.0) is session
        assert session.listener_count == 0

    @pytest.mark.asyncio
    async def test_enters_state_times_out(self):
        """Test enters state times out"""
        session = FakeSession("g", "c")
        with pytest.raises(asyncio.TimeoutError):
            await enters_state(session, ConnectionStatus.READY, 0.01)
        assert session.listener_count == 0

    @pytest.mark.asyncio
    async def test_enters_state_fails_when_destroyed(self):
        """Test enters state fails when destroyed"""
        session = FakeSession("g", "c")
        asyncio.get_running_loop().call_soon(session.destroy)
        with pytest.raises(ConnectFailure):
            await enters_state(session, ConnectionStatus.READY, 1.0)

    @pytest.mark.asyncio
    async def test_first_of_returns_first_success(self):
        """Test first of returns first success"""
        session = FakeSession("g", "c")
        asyncio.get_running_loop().call_soon(session.become, ConnectionStatus.SIGNALLING)
        result = await first_of(
            enters_state(session, ConnectionStatus.READY, 0.01),
            enters_state(session, ConnectionStatus.SIGNALLING, 1.0),
        )
        assert result is session
        assert session.listener_count == 0

    @pytest.mark.asyncio
    async def test_first_of_raises_when_all_fail(self):
        """Test first of raises when all fail"""
        session = FakeSession("g", "c")
        with pytest.raises(asyncio.TimeoutError):
            await first_of(
                enters_state(session, ConnectionStatus.SIGNALLING, 0.01),
                enters_state(session, ConnectionStatus.READY, 0.02),
            )


class TestConnect:
    """Test connect and session reuse"""

    @pytest.mark.asyncio
    async def test_connect_waits_for_ready(self):
        """Test connect waits for ready"""
        transport = FakeTransport()
        manager = VoiceSessionManager(transport, FAST)

        session = await manager.connect(make_channel("c1", "g1"))

        assert session.status is ConnectionStatus.READY
        assert manager.is_connected("g1")
        assert manager.state("g1") is GuildConnectionState.READY
        assert manager.get_session("g1") is session

    @pytest.mark.asyncio
    async def test_connect_twice_returns_same_session(self):
        """Test connect twice returns same session"""
        transport = FakeTransport()
        manager = VoiceSessionManager(transport, FAST)
        channel = make_channel("c1", "g1")

        first = await manager.connect(channel)
        second = await manager.connect(channel)

        assert first is second
        assert len(transport.opened) == 1

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_session(self):
        """Test concurrent connects share one session"""
        transport = FakeTransport()
        manager = VoiceSessionManager(transport, FAST)
        channel = make_channel("c1", "g1")

        first, second = await asyncio.gather(manager.connect(channel), manager.connect(channel))

        assert first is second
        assert len(transport.opened) == 1

    @pytest.mark.asyncio
    async def test_other_channel_in_same_guild_replaces_session(self):
        """Test other channel in same guild replaces session"""
        transport = FakeTransport()
        manager = VoiceSessionManager(transport, FAST)

        old = await manager.connect(make_channel("c1", "g1"))
        new = await manager.connect(make_channel("c2", "g1"))

        assert new is not old
        assert old.status is ConnectionStatus.DESTROYED
        assert manager.get_session("g1") is new

    @pytest.mark.asyncio
    async def test_adopts_existing_transport_session(self):
        """Test adopts existing transport session"""
        transport = FakeTransport()
        existing = FakeSession("g1", "c1")
        existing.become(ConnectionStatus.READY)
        transport.existing["g1"] = existing
        manager = VoiceSessionManager(transport, FAST)

        assert await manager.connect(make_channel("c1", "g1")) is existing
        assert transport.opened == []

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        """Test connect timeout"""
        transport = FakeTransport(auto_ready=False)
        manager = VoiceSessionManager(transport, FAST)

        with pytest.raises(ConnectTimeout):
            await manager.connect(make_channel("c1", "g1"))

        assert transport.opened[0].status is ConnectionStatus.DESTROYED
        assert manager.get_session("g1") is None
        assert manager.state("g1") is GuildConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_transport_error_becomes_connect_failure(self):
        """Test transport error becomes connect failure"""
        manager = VoiceSessionManager(FakeTransport(error=RuntimeError("no voice gateway")), FAST)
        with pytest.raises(ConnectFailure):
            await manager.connect(make_channel("c1", "g1"))
        assert manager.get_session("g1") is None


class TestDisconnect:
    """Test delayed teardown"""

    @pytest.mark.asyncio
    async def test_disconnect_is_delayed(self):
        """Test disconnect is delayed"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        session = await manager.connect(make_channel("c1", "g1"))

        manager.disconnect("g1")
        assert session.destroy_calls == 0
        await asyncio.sleep(0.1)

        assert session.destroy_calls == 1
        assert manager.get_session("g1") is None

    @pytest.mark.asyncio
    async def test_double_disconnect_tears_down_once(self):
        """Test double disconnect tears down once"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        session = await manager.connect(make_channel("c1", "g1"))

        manager.disconnect("g1")
        manager.disconnect("g1")
        await asyncio.sleep(0.1)
        manager.disconnect("g1")

        assert session.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_disconnect_unknown_guild(self):
        """Test disconnect unknown guild"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        manager.disconnect("nobody")

    @pytest.mark.asyncio
    async def test_reconnect_cancels_pending_disconnect(self):
        """Test reconnect cancels pending disconnect"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        channel = make_channel("c1", "g1")
        session = await manager.connect(channel)

        manager.disconnect("g1")
        assert await manager.connect(channel) is session
        await asyncio.sleep(0.1)

        assert session.destroy_calls == 0
        assert manager.is_connected("g1")

    @pytest.mark.asyncio
    async def test_disconnect_all_is_immediate(self):
        """Test disconnect all is immediate"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        first = await manager.connect(make_channel("c1", "g1"))
        second = await manager.connect(make_channel("c2", "g2"))
        manager.disconnect("g1")

        manager.disconnect_all()

        assert first.status is ConnectionStatus.DESTROYED
        assert second.status is ConnectionStatus.DESTROYED
        assert manager.states() == {}
        await asyncio.sleep(0.1)
        assert first.destroy_calls == 1


class TestRecovery:
    """Test reaction to transport-reported disconnects"""

    @pytest.mark.asyncio
    async def test_renegotiation_keeps_session(self):
        """Test renegotiation keeps session"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        session = await manager.connect(make_channel("c1", "g1"))

        session.become(ConnectionStatus.DISCONNECTED)
        assert manager.state("g1") is GuildConnectionState.RECONNECTING
        await asyncio.sleep(0.01)
        session.become(ConnectionStatus.SIGNALLING)
        session.become(ConnectionStatus.READY)
        await asyncio.sleep(0.1)

        assert manager.get_session("g1") is session
        assert manager.state("g1") is GuildConnectionState.READY
        assert session.destroy_calls == 0

    @pytest.mark.asyncio
    async def test_no_renegotiation_drops_session(self):
        """Test no renegotiation drops session"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        session = await manager.connect(make_channel("c1", "g1"))

        session.become(ConnectionStatus.DISCONNECTED)
        await asyncio.sleep(0.15)

        assert session.status is ConnectionStatus.DESTROYED
        assert manager.get_session("g1") is None

    @pytest.mark.asyncio
    async def test_one_recovery_per_guild(self):
        """Test one recovery per guild"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        session = await manager.connect(make_channel("c1", "g1"))

        session.become(ConnectionStatus.DISCONNECTED)
        task = manager._recovery_tasks["g1"]
        manager._begin_recovery(session)
        manager._begin_recovery(session)

        assert manager._recovery_tasks["g1"] is task
        await asyncio.sleep(0.15)
        assert session.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_external_destroy_forgets_session(self):
        """Test external destroy forgets session"""
        manager = VoiceSessionManager(FakeTransport(), FAST)
        session = await manager.connect(make_channel("c1", "g1"))

        session.destroy()

        assert manager.get_session("g1") is None
        assert not manager.is_connected("g1")
