"""
Occupancy and maintenance-window gating
"""

import logging
from datetime import datetime, tzinfo
from typing import Callable, Iterable, List, Optional

from .config import MaintenanceWindow
from .models import ChannelInfo

logger = logging.getLogger(__name__)


def in_maintenance_window(now: datetime, windows: Iterable[MaintenanceWindow],
                          tz: Optional[tzinfo] = None) -> Optional[MaintenanceWindow]:
    """Return the window containing now (converted to tz), if any"""
    local = now.astimezone(tz) if tz is not None else now
    for window in windows:
        if window.contains(local):
            return window
    return None


class OccupancyGate:
    """Go/no-go checks made before joining a channel"""

    def __init__(self, directory, windows: List[MaintenanceWindow], tz: Optional[tzinfo] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            directory: object with `async fetch_channel(channel_id) -> ChannelInfo | None`
            windows: weekly blackout windows
            tz: zone the windows are expressed in
            clock: returns the current aware datetime
        """
        self.directory = directory
        self.windows = list(windows)
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(self.tz))

    def in_maintenance_window(self, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        window = in_maintenance_window(now, self.windows, self.tz)
        if window is not None:
            logger.debug(f"Currently in maintenance window {window}")
            return True
        return False

    async def has_qualifying_participants(self, channel_id: str) -> bool:
        """
        True when the channel has at least one member that is not a bot.

        Lookup errors fail closed: they are logged and reported as empty.
        """
        try:
            channel: Optional[ChannelInfo] = await self.directory.fetch_channel(channel_id)
        except Exception as e:
            logger.error(f"Failed to check channel users for {channel_id}: {e}",
                         extra={"channel_id": channel_id})
            return False

        if channel is None:
            return False

        count = channel.human_count
        logger.debug(f"Channel user check for {channel_id}: {count} users",
                     extra={"channel_id": channel_id, "user_count": count})
        return count > 0
