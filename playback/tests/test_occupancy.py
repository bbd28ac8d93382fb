"""
Tests for occupancy and maintenance gating
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from fakes import FakeDirectory, make_channel
from reminder_playback.config import parse_maintenance_windows
from reminder_playback.errors import LookupFailed
from reminder_playback.occupancy import OccupancyGate, in_maintenance_window

MEXICO_CITY = ZoneInfo("America/Mexico_City")


class TestMaintenanceWindow:
    """Test maintenance window checks in the configured zone"""

    def test_converts_to_local_time(self):
        """Test converts to local time"""
        windows = parse_maintenance_windows("tue 13:30-19:30")
        # Mexico City is UTC-6: 20:00 UTC is 14:00 local on Tuesday
        inside = datetime(2024, 1, 2, 20, 0, tzinfo=timezone.utc)
        before = datetime(2024, 1, 2, 19, 0, tzinfo=timezone.utc)

        assert in_maintenance_window(inside, windows, MEXICO_CITY) is windows[0]
        assert in_maintenance_window(before, windows, MEXICO_CITY) is None

    def test_no_windows(self):
        """Test no windows"""
        now = datetime(2024, 1, 2, 14, 0, tzinfo=MEXICO_CITY)
        assert in_maintenance_window(now, [], MEXICO_CITY) is None

    def test_gate_uses_clock(self):
        """Test gate uses clock"""
        gate = OccupancyGate(
            FakeDirectory(),
            parse_maintenance_windows("tue 13:30-19:30"),
            MEXICO_CITY,
            clock=lambda: datetime(2024, 1, 2, 15, 0, tzinfo=MEXICO_CITY),
        )
        assert gate.in_maintenance_window() is True
        assert gate.in_maintenance_window(datetime(2024, 1, 2, 20, 0, tzinfo=MEXICO_CITY)) is False


class TestOccupancy:
    """Test qualifying participant checks"""

    @pytest.mark.asyncio
    async def test_humans_present(self):
        """Test humans present"""
        gate = OccupancyGate(FakeDirectory({"1": make_channel("1", "g", humans=2)}), [])
        assert await gate.has_qualifying_participants("1") is True

    @pytest.mark.asyncio
    async def test_only_bots_present(self):
        """Test only bots present"""
        gate = OccupancyGate(FakeDirectory({"1": make_channel("1", "g", humans=0, bots=1)}), [])
        assert await gate.has_qualifying_participants("1") is False

    @pytest.mark.asyncio
    async def test_missing_channel(self):
        """Test missing channel"""
        gate = OccupancyGate(FakeDirectory(), [])
        assert await gate.has_qualifying_participants("404") is False

    @pytest.mark.asyncio
    async def test_lookup_errors_fail_closed(self):
        """Test lookup errors fail closed"""
        directory = FakeDirectory(errors={"1": LookupFailed("503 Service Unavailable")})
        gate = OccupancyGate(directory, [])
        assert await gate.has_qualifying_participants("1") is False
        assert directory.calls == ["1"]
