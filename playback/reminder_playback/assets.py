"""
Resolve an event's content descriptor to a playable local file
"""

import logging
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ContentNotFound
from .models import EventDefinition, EventKind
from .tts import SpeechCache

logger = logging.getLogger(__name__)


def rotated_audio(rotation_sets: Dict[str, Sequence[str]], set_name: str, hour: int) -> str:
    """
    Pick the file of a rotation set for a given hour of day.

    Rotation is a pure function of the hour, so nothing is persisted and a
    restart keeps the same sequence.

    Raises:
        ContentNotFound: set is unknown or empty
    """
    files = rotation_sets.get(set_name)
    if not files:
        raise ContentNotFound(f"Audio set not found: {set_name}")
    return files[hour % len(files)]


class AssetResolver:
    """Turns an EventDefinition into a concrete audio file path"""

    def __init__(self, rotation_sets: Dict[str, List[str]], speech_cache: SpeechCache,
                 tz: Optional[tzinfo] = None, clock: Optional[Callable[[], datetime]] = None):
        self.rotation_sets = rotation_sets
        self.speech_cache = speech_cache
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(self.tz))

    def current_hour(self) -> int:
        return self._clock().hour

    async def resolve(self, event: EventDefinition) -> str:
        """
        Return the file to play for event.

        DirectAudio paths are returned verbatim; existence is checked at
        playback time.

        Raises:
            ContentNotFound: rotation set is unknown or empty
            SynthesisFailed: speech could not be generated on a cache miss
        """
        if event.kind is EventKind.SYNTHESIZED_SPEECH:
            return await self.speech_cache.generate(event.content)

        if event.kind is EventKind.ROTATING_AUDIO_SET:
            path = rotated_audio(self.rotation_sets, event.content, self.current_hour())
            logger.debug(f"Using rotated audio {path} from set {event.content}")
            return path

        return event.content
